"""
Trust & Escrow Engine - Typed Payloads

Boundary models for every structured JSON column. Raw dicts from callers are
validated here once; services only ever see these types, and JSON columns
only ever receive their model_dump(mode="json") form.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .db_models import DisputeCaseStatus, DisputeWinner, TrustEventType


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Storage convention: naive datetimes are UTC; aware ones are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# LOCATION / PROOF
# =============================================================================

class GeoPoint(BaseModel):
    """A WGS84 coordinate."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationData(BaseModel):
    """Where the service is scheduled to happen."""
    coordinates: GeoPoint
    address: Optional[str] = None


class CompletionProof(BaseModel):
    """Evidence bundle submitted to confirm delivery. Every part is optional."""
    gps: Optional[GeoPoint] = None
    timestamp: Optional[datetime] = None
    media: Optional[List[str]] = None

    @field_validator("gps", mode="before")
    @classmethod
    def unwrap_coordinates(cls, value):
        # Accept {"coordinates": {"lat", "lng"}} as well as {"lat", "lng"}
        if isinstance(value, dict) and "coordinates" in value:
            return value["coordinates"]
        return value

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return to_naive_utc(value)


# =============================================================================
# ESCROW REQUESTS
# =============================================================================

class EscrowRequest(BaseModel):
    """Request to open an escrow hold."""
    client_id: str
    provider_id: str
    service_id: str
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    scheduled_time: Optional[datetime] = None
    location_data: Optional[LocationData] = None
    service_type: Optional[str] = None

    @field_validator("scheduled_time")
    @classmethod
    def normalize_scheduled_time(cls, value):
        return to_naive_utc(value)

    @model_validator(mode="after")
    def distinct_parties(self):
        if self.client_id == self.provider_id:
            raise ValueError("client and provider must be different users")
        return self


class DisputeRequest(BaseModel):
    """Dispute submission from either party."""
    reason: str = Field(..., min_length=1)
    evidence: Optional[Any] = None


class Resolution(BaseModel):
    """Outcome of a dispute."""
    winner: DisputeWinner
    reasoning: Optional[str] = None
    evidence: Optional[Any] = None
    resolved_at: Optional[datetime] = None


class DisputeRecord(BaseModel):
    """Shape of transactions.dispute_data."""
    dispute_id: str
    initiator: str
    reason: str
    evidence: Optional[Any] = None
    timestamp: datetime
    status: DisputeCaseStatus = DisputeCaseStatus.OPEN
    resolution: Optional[Resolution] = None


# =============================================================================
# TRUST EVENT PAYLOADS
# =============================================================================

class TrustEventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegistrationEvent(TrustEventPayload):
    source: Optional[str] = None


class LoginEvent(TrustEventPayload):
    ip_address: Optional[str] = None


class ReviewReceivedEvent(TrustEventPayload):
    rating: int = Field(..., ge=1, le=5)
    comment_provided: bool = False
    reviewer_id: Optional[str] = None


class VerificationUpgradeEvent(TrustEventPayload):
    tier: int = Field(..., ge=1, le=4)
    results: Dict[str, Any] = Field(default_factory=dict)


class FraudReportedEvent(TrustEventPayload):
    reporter_id: str
    reason: str
    transaction_id: Optional[str] = None


class DisputeOutcomeEvent(TrustEventPayload):
    winner: DisputeWinner
    role: str = Field(..., pattern="^(client|provider)$")


class TransactionCompletedEvent(TrustEventPayload):
    role: str = Field(..., pattern="^(client|provider)$")
    amount: str


EVENT_PAYLOADS: Dict[TrustEventType, Type[TrustEventPayload]] = {
    TrustEventType.REGISTRATION: RegistrationEvent,
    TrustEventType.LOGIN: LoginEvent,
    TrustEventType.REVIEW_RECEIVED: ReviewReceivedEvent,
    TrustEventType.VERIFICATION_UPGRADE: VerificationUpgradeEvent,
    TrustEventType.FRAUD_REPORTED: FraudReportedEvent,
    TrustEventType.DISPUTE_OUTCOME: DisputeOutcomeEvent,
    TrustEventType.TRANSACTION_COMPLETED: TransactionCompletedEvent,
}


# =============================================================================
# BOUNDARY HELPERS
# =============================================================================

def parse_payload(model: Type[BaseModel], data: Any) -> BaseModel:
    """Validate raw input into a model, raising the engine's ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


def parse_event_data(event_type: TrustEventType, data: Any) -> Dict[str, Any]:
    """Validate event_data against the payload registered for its type."""
    model = EVENT_PAYLOADS.get(event_type)
    if model is None:
        raise ValidationError(f"No payload registered for event type {event_type}")
    return parse_payload(model, data).model_dump(mode="json")
