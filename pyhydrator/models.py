"""Pydantic models for telemetry totals, periods and orchestrator state."""
import logging
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse
from pydantic import BaseModel, ConfigDict, Field

from pyhydrator.const import DAY_GRANULARITY_DAYS, MONTH_GRANULARITY_DAYS

log = logging.getLogger(__name__)


def infer_granularity(start_iso: str, end_iso: str) -> str:
    """Pick an aggregation level from the length of the range."""
    days = (isoparse(end_iso) - isoparse(start_iso)).total_seconds() / 86400
    if days > MONTH_GRANULARITY_DAYS:
        return "month"
    if days > DAY_GRANULARITY_DAYS:
        return "day"
    return "hour"


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        log.debug(f"Non-numeric total_value {value!r} - using 0")
        return 0.0


class DeviceTotal(BaseModel):
    """A device's aggregate (kWh or m³) for the requested period.

    Rows from the totals API carry ``id``, ``name`` or ``label`` and
    ``total_value``; everything else is optional.  Use :meth:`from_row`
    to normalise a raw row.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    label: str
    value: float = Field(default=0.0, ge=0)
    device_type: str = Field(default="energy", alias="deviceType")
    slave_id: Optional[str] = Field(default=None, alias="slaveId")
    central_id: Optional[str] = Field(default=None, alias="centralId")

    @classmethod
    def from_row(cls, row: Dict[str, Any], domain: str = "energy") -> Optional["DeviceTotal"]:
        if not isinstance(row, dict) or not row.get("id"):
            return None
        device_id = str(row["id"])
        value = _number(row.get("total_value", row.get("totalValue")))
        if value < 0:
            log.debug(f"Negative total {value} for device {device_id} - clamping to 0")
            value = 0.0
        slave_id = row.get("slaveId")
        central_id = row.get("centralId")
        return cls(
            id=device_id,
            customer_id=row.get("customerId"),
            label=str(row.get("name") or row.get("label") or row.get("identifier") or device_id),
            value=value,
            device_type=row.get("deviceType") or domain,
            slave_id=str(slave_id) if slave_id not in (None, "") else None,
            central_id=str(central_id) if central_id not in (None, "") else None,
        )


class Period(BaseModel):
    """Date range and granularity of a hydration.  Immutable."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    start_iso: str = Field(alias="startISO")
    end_iso: str = Field(alias="endISO")
    granularity: str = "day"
    timezone: str = Field(default="America/Sao_Paulo", alias="tz")

    @classmethod
    def create(cls, start_iso: str, end_iso: str, granularity: Optional[str] = None,
               timezone: str = "America/Sao_Paulo") -> "Period":
        start, end = isoparse(start_iso), isoparse(end_iso)
        if (start.tzinfo is None) != (end.tzinfo is None):
            raise ValueError(f"Period bounds mix naive and timezone-aware times: {start_iso}, {end_iso}")
        if end < start:
            raise ValueError(f"Period end {end_iso} is before start {start_iso}")
        return cls(start_iso=start_iso, end_iso=end_iso,
                   granularity=granularity or infer_granularity(start_iso, end_iso),
                   timezone=timezone)

    @classmethod
    def parse(cls, value: Any) -> Optional["Period"]:
        if value is None or isinstance(value, Period):
            return value
        if isinstance(value, dict):
            start = value.get("start_iso") or value.get("startISO")
            end = value.get("end_iso") or value.get("endISO")
            if not start or not end:
                raise ValueError(f"Period requires start and end: {value}")
            return cls.create(start, end, value.get("granularity"),
                              value.get("timezone") or value.get("tz") or "America/Sao_Paulo")
        raise ValueError(f"Unsupported period value: {value!r}")

    @property
    def key(self) -> str:
        return f"{self.start_iso}:{self.end_iso}:{self.granularity}"


class CacheEntry(BaseModel):
    items: List[DeviceTotal]
    cached_at: float
    ttl_minutes: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return bool(self.items) and now - self.cached_at < self.ttl_minutes * 60


class BusyState(BaseModel):
    """Snapshot of the global busy indicator."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    is_visible: bool = False
    current_domain: Optional[str] = None
    message: Optional[str] = None
    start_time: Optional[float] = None
    timeout_handle: Optional[Any] = Field(default=None, exclude=True)
    request_count: int = 0


class WidgetRegistration(BaseModel):
    widget_id: str
    domain: str
    registered_at: float
    priority: int


class ProvidePayload(BaseModel):
    """Body of a provide-data signal and of the latest-value slot."""
    model_config = ConfigDict(populate_by_name=True)

    domain: str
    period_key: str = Field(alias="periodKey")
    items: List[DeviceTotal]
    version: int
    timestamp: float

    def to_signal(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Notification(BaseModel):
    message: str
    level: str = "info"
    blocking: bool = False
