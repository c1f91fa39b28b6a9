"""Request and response bodies of the REST API."""
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from pyhydrator.models import DeviceTotal


class CredentialsRequest(BaseModel):
    """Ingestion credentials, as sent by the dashboard host."""
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(alias="customerId")
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")


class TokensRequest(BaseModel):
    tokens: Dict[str, str]


class SignalRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class HydrateResponse(BaseModel):
    domain: str
    period_key: str = Field(serialization_alias="periodKey")
    count: int
    items: List[DeviceTotal]


class InvalidateResponse(BaseModel):
    domain: str
    removed: int


class StatsResponse(BaseModel):
    hit_rate: float
    total_requests: int
    cache_size: int
    inflight_count: int
    busy: bool
    widgets: int
    summary: Dict[str, float] = Field(default_factory=dict)
