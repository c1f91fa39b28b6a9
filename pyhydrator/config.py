"""
Configuration Management for pyhydrator

All orchestrator and server settings are read from environment variables (or a
local .env file) through a single pydantic-settings class.  Every value can also
be passed by field name to the constructor, which is how tests and embedding
applications build isolated orchestrators.

Environment Variables:

    Remote API:
        HY_DATA_API_HOST            - Telemetry API host (default: https://api.data.apps.myio-bas.com)
        HY_AUTH_URL                 - Token endpoint (default: {HY_DATA_API_HOST}/api/v1/auth)
        HY_REQUEST_TIMEOUT          - HTTP timeout in seconds (default: 30)
        HY_POOL_MAXSIZE             - Connection pool size, 0 disables re-use (default: 10)

    Credentials (optional - may also be supplied at runtime via set_credentials):
        HY_CUSTOMER_ID              - Ingestion customer id
        HY_CLIENT_ID                - Ingestion client id
        HY_CLIENT_SECRET            - Ingestion client secret
        HY_CREDENTIALS_TIMEOUT      - Seconds a fetch waits for credentials (default: 10)

    Cache:
        HY_TTL_MINUTES              - Freshness of a cache entry in minutes (default: 5)
        HY_MAX_CACHE_SIZE           - Entries kept before the oldest is evicted (default: 50)
        HY_SWEEP_INTERVAL           - Seconds between expired-entry sweeps (default: 600)
        HY_PERSIST                  - Mirror entries to a JSON file "yes"/"no" (default: "no")
        HY_PERSIST_PATH             - Mirror file (default: .pyhydrator-cache.json)
        HY_PERSIST_MAX_BYTES        - Larger entries are not mirrored (default: 5 MiB)

    Safety nets:
        HY_BUSY_TIMEOUT             - Busy indicator timeout in seconds (default: 25)
        HY_WATCHDOG_TIMEOUT         - Per-domain watchdog in seconds (default: 30)
        HY_TOKEN_EXPIRED_DEBOUNCE   - Min seconds between token-expired signals (default: 60)
        HY_LOCK_TIMEOUT             - Seconds a hydration waits for the global lock (default: 60)

    Event bus:
        HY_EMIT_DEDUP_WINDOW        - Duplicate provide-data window in seconds (default: 0.1)
        HY_SUBCONTEXT_RETRY_DELAY   - Delay before re-delivering to a sub-context (default: 1)
        HY_SUBCONTEXT_RETRY_ATTEMPTS- Re-delivery attempts per sub-context (default: 3)

    Metrics:
        HY_TELEMETRY_INTERVAL       - Seconds between telemetry reports (default: 300)
        HY_METRICS_HISTORY          - Hydration samples kept (default: 500)

    Server:
        HY_BIND_ADDRESS             - Bind address (default: "0.0.0.0")
        HY_PORT                     - Port (default: 8680)
        HY_DEBUG                    - Verbose logging "yes"/"no" (default: "no")
        HY_DOMAINS                  - Comma separated domains (default: energy,water,temperature)
        HY_NON_FETCHABLE_DOMAINS    - Comma separated domains never fetched (default: temperature)
        HY_CORS_ORIGINS             - JSON list of allowed origins (default: ["*"])

Accessing Configuration:

    from pyhydrator.config import Settings

    settings = Settings(busy_timeout=5)
    if settings.has_credentials:
        ...
"""
import logging
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from pyhydrator.const import (AUTH_PATH, DEFAULT_DATA_API_HOST, DEFAULT_DOMAINS,
                              DEFAULT_NON_FETCHABLE_DOMAINS)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Orchestrator and server settings."""

    # Remote API
    data_api_host: str = Field(default=DEFAULT_DATA_API_HOST, alias="HY_DATA_API_HOST")
    auth_url: Optional[str] = Field(default=None, alias="HY_AUTH_URL")
    request_timeout: float = Field(default=30.0, gt=0, alias="HY_REQUEST_TIMEOUT")
    pool_maxsize: int = Field(default=10, ge=0, alias="HY_POOL_MAXSIZE")

    # Credentials
    customer_id: Optional[str] = Field(default=None, alias="HY_CUSTOMER_ID")
    client_id: Optional[str] = Field(default=None, alias="HY_CLIENT_ID")
    client_secret: Optional[str] = Field(default=None, alias="HY_CLIENT_SECRET")
    credentials_timeout: float = Field(default=10.0, gt=0, alias="HY_CREDENTIALS_TIMEOUT")

    # Cache
    ttl_minutes: float = Field(default=5.0, gt=0, alias="HY_TTL_MINUTES")
    max_cache_size: int = Field(default=50, gt=0, alias="HY_MAX_CACHE_SIZE")
    sweep_interval: float = Field(default=600.0, gt=0, alias="HY_SWEEP_INTERVAL")
    persist: bool = Field(default=False, alias="HY_PERSIST")
    persist_path: str = Field(default=".pyhydrator-cache.json", alias="HY_PERSIST_PATH")
    persist_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0, alias="HY_PERSIST_MAX_BYTES")

    # Safety nets
    busy_timeout: float = Field(default=25.0, gt=0, alias="HY_BUSY_TIMEOUT")
    watchdog_timeout: float = Field(default=30.0, gt=0, alias="HY_WATCHDOG_TIMEOUT")
    token_expired_debounce: float = Field(default=60.0, ge=0, alias="HY_TOKEN_EXPIRED_DEBOUNCE")
    lock_timeout: float = Field(default=60.0, gt=0, alias="HY_LOCK_TIMEOUT")

    # Event bus
    emit_dedup_window: float = Field(default=0.1, ge=0, alias="HY_EMIT_DEDUP_WINDOW")
    subcontext_retry_delay: float = Field(default=1.0, gt=0, alias="HY_SUBCONTEXT_RETRY_DELAY")
    subcontext_retry_attempts: int = Field(default=3, ge=0, alias="HY_SUBCONTEXT_RETRY_ATTEMPTS")

    # Metrics
    telemetry_interval: float = Field(default=300.0, gt=0, alias="HY_TELEMETRY_INTERVAL")
    metrics_history: int = Field(default=500, gt=0, alias="HY_METRICS_HISTORY")

    # Server
    server_host: str = Field(default="0.0.0.0", alias="HY_BIND_ADDRESS")
    server_port: int = Field(default=8680, alias="HY_PORT")
    debug: bool = Field(default=False, alias="HY_DEBUG")
    domains: str = Field(default=",".join(DEFAULT_DOMAINS), alias="HY_DOMAINS")
    non_fetchable_domains: str = Field(default=",".join(DEFAULT_NON_FETCHABLE_DOMAINS),
                                       alias="HY_NON_FETCHABLE_DOMAINS")
    cors_origins: List[str] = Field(default=["*"], alias="HY_CORS_ORIGINS")

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def token_url(self) -> str:
        return self.auth_url or f"{self.data_api_host.rstrip('/')}{AUTH_PATH}"

    @property
    def domain_list(self) -> List[str]:
        return [d.strip() for d in self.domains.split(",") if d.strip()]

    @property
    def fetchable_domains(self) -> List[str]:
        return [d for d in self.domain_list if self.is_fetchable(d)]

    def is_fetchable(self, domain: str) -> bool:
        skipped = [d.strip() for d in self.non_fetchable_domains.split(",") if d.strip()]
        return domain not in skipped

    @property
    def has_credentials(self) -> bool:
        """All three ingestion credentials were configured up front."""
        return bool(self.customer_id and self.client_id and self.client_secret)
