"""
Server configuration.

The server shares the orchestrator's Settings (HY_* environment variables and
.env, see pyhydrator.config); this module only holds the process-wide
instance used by the FastAPI application.
"""
import logging

from pyhydrator import __version__
from pyhydrator.config import Settings

logger = logging.getLogger(__name__)

SERVER_VERSION = __version__

settings = Settings()
