"""Signal names and defaults shared across pyhydrator."""

# Inbound signals (consumers -> orchestrator)
SIGNAL_REQUEST_DATA = "request-data"
SIGNAL_UPDATE_DATE = "update-date"
SIGNAL_DASHBOARD_STATE = "dashboard-state"
SIGNAL_WIDGET_REGISTER = "widget:register"
SIGNAL_CLEAR = "clear"

INBOUND_SIGNALS = (
    SIGNAL_REQUEST_DATA,
    SIGNAL_UPDATE_DATE,
    SIGNAL_DASHBOARD_STATE,
    SIGNAL_WIDGET_REGISTER,
    SIGNAL_CLEAR,
)

# Outbound signals (orchestrator -> consumers)
SIGNAL_PROVIDE_DATA = "provide-data"
SIGNAL_CACHE_HYDRATED = "cache-hydrated"
SIGNAL_ERROR = "error"
SIGNAL_TOKEN_EXPIRED = "token-expired"
SIGNAL_TOKEN_ROTATED = "token-rotated"
SIGNAL_READY = "orchestrator:ready"
SIGNAL_BUSY_TIMEOUT_RECOVERY = "busy-timeout-recovery"
SIGNAL_NOTIFICATION = "notification"

OUTBOUND_SIGNALS = (
    SIGNAL_PROVIDE_DATA,
    SIGNAL_CACHE_HYDRATED,
    SIGNAL_ERROR,
    SIGNAL_TOKEN_EXPIRED,
    SIGNAL_TOKEN_ROTATED,
    SIGNAL_READY,
    SIGNAL_BUSY_TIMEOUT_RECOVERY,
    SIGNAL_NOTIFICATION,
)

DEFAULT_DATA_API_HOST = "https://api.data.apps.myio-bas.com"
TOTALS_PATH = "/api/v1/telemetry/customers/{customer_id}/{domain}/devices/totals"
AUTH_PATH = "/api/v1/auth"

DEFAULT_DOMAIN = "energy"
DEFAULT_DOMAINS = ["energy", "water", "temperature"]
# Domains served from the dashboard's own datasource, never from the totals API
DEFAULT_NON_FETCHABLE_DOMAINS = ["temperature"]

STORAGE_PREFIX = "hydrator:cache"

BUSY_MESSAGE = "Loading data..."
RECOVERY_MESSAGE = "Data reloaded automatically"
CREDENTIALS_MESSAGE = ("Authentication credentials are not configured. "
                       "Required: CLIENT_ID, CLIENT_SECRET, CUSTOMER_ID.")

# Granularity thresholds in days
MONTH_GRANULARITY_DAYS = 92
DAY_GRANULARITY_DAYS = 3
