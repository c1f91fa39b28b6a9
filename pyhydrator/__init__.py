# pyHydrator Module
# -*- coding: utf-8 -*-
"""
 Python module that hydrates dashboard widgets with telemetry totals

 Features
    * One orchestrator per dashboard - widgets never call the telemetry API themselves
    * Will cache totals per domain and period (5 minute TTL, oldest evicted first)
    * Coalesces concurrent requests for the same data into a single fetch
    * Serialises hydration cycles with a FIFO lock
    * Publishes results on a deduplicated event bus (in-process, embedded contexts, WebSocket)
    * Busy indicator with timeout recovery and a per-domain watchdog
    * Can mirror the cache to a JSON file for warm restarts

 Classes
    Orchestrator(settings, token_provider_factory, session, store, transports, notifier,
        telemetry_sink, clock)
    Settings(...)             # pydantic-settings, HY_* environment variables

 Functions
    init()                    # Start background tasks, announce orchestrator:ready
    destroy()                 # Stop tasks, abort fetches, clear handlers
    set_credentials(customer_id, client_id, client_secret)
    update_tokens(tokens)     # Rotate tokens - aborts fetches and clears the cache
    hydrate_domain(domain, period)
    request_data(domain, period, widget_id, priority, callback)
    invalidate_cache(domain)  # "*" for every domain
    get_stats()               # hit rate, requests, cache size, in-flight count
    get_busy_state()          # Copy of the busy indicator state

 Requirements
    This module requires the following modules: requests, pydantic, pydantic-settings,
    python-dateutil, python-dotenv (fastapi and uvicorn for the server)
"""
import logging
import sys

version_tuple = (0, 1, 0)
version = __version__ = '%d.%d.%d' % version_tuple
__author__ = 'pyhydrator'

from pyhydrator.config import Settings
from pyhydrator.exceptions import (HydratorError, ConfigurationError, CredentialsNotConfigured,
                                   MissingCredentialError, FetchError, AuthExpiredError, AuthError,
                                   FetchCancelled, LockTimeout)
from pyhydrator.models import DeviceTotal, Period, ProvidePayload
from pyhydrator.orchestrator import Orchestrator

log = logging.getLogger(__name__)
log.debug('%s version %s', __name__, __version__)
log.debug('Python %s on %s', sys.version, sys.platform)


def set_debug(toggle=True, color=True):
    """Enable verbose logging"""
    if toggle:
        if color:
            logging.basicConfig(format='\x1b[31;1m%(levelname)s:%(message)s\x1b[0m', level=logging.DEBUG)
        else:
            logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.DEBUG)
        log.setLevel(logging.DEBUG)
        log.debug("%s [%s]\n" % (__name__, __version__))
    else:
        log.setLevel(logging.NOTSET)
