"""
Trust & Escrow Engine - Domain Errors

Callers branch on the error class:
- ValidationError: malformed input, reject the call
- NotFoundError: unknown user or transaction
- PreconditionError: wrong state for the requested transition, re-check and retry
- RiskBlockedError: transaction refused by risk assessment
- ExternalPortError: payment hold/capture/refund/transfer failed
"""
from typing import List, Optional


class TrustEscrowError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(TrustEscrowError):
    """Raised when input is malformed or missing."""
    pass


class NotFoundError(TrustEscrowError):
    """Raised when a user, service or transaction does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PreconditionError(TrustEscrowError):
    """Raised when an operation is attempted in the wrong state."""
    pass


class RiskBlockedError(TrustEscrowError):
    """Raised when escrow creation is refused as high risk."""

    def __init__(
        self,
        risk_score: int,
        risk_factors: List[str],
        recommendations: Optional[List[str]] = None,
    ):
        self.risk_score = risk_score
        self.risk_factors = list(risk_factors)
        self.recommendations = list(recommendations or [])
        super().__init__(
            f"Transaction blocked due to high risk (score={risk_score}): "
            f"{', '.join(self.risk_factors)}"
        )


class ExternalPortError(TrustEscrowError):
    """Raised when a payment port call fails. Fatal for the current operation."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Payment port {operation} failed: {message}")
