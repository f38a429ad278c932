"""Trust & Escrow Engine - Data Models"""
from .db_models import (
    # Enums
    TransactionStatus, TrustEventType, DisputeWinner, DisputeCaseStatus,
    # Tables
    UserDB, ServiceDB, TransactionDB, TrustEventDB, ReviewDB,
    utcnow,
)
from .schemas import (
    GeoPoint, LocationData, CompletionProof,
    EscrowRequest, DisputeRequest, Resolution, DisputeRecord,
    parse_payload, parse_event_data,
)

__all__ = [
    "TransactionStatus", "TrustEventType", "DisputeWinner", "DisputeCaseStatus",
    "UserDB", "ServiceDB", "TransactionDB", "TrustEventDB", "ReviewDB",
    "utcnow",
    "GeoPoint", "LocationData", "CompletionProof",
    "EscrowRequest", "DisputeRequest", "Resolution", "DisputeRecord",
    "parse_payload", "parse_event_data",
]
