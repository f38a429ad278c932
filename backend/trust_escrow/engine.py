"""
Trust & Escrow Engine - Entry Point

The surface routing/controller layers call. One instance per session:

    ctx = EngineContext(db=session, payment_port=port)
    engine = TrustEscrowEngine(ctx)
    engine.create_escrow({...})

Architecture:
- TrustEventLedger -> TrustScoreCalculator -> RiskAssessor
- RiskAssessor gates EscrowService.create_escrow
- DisputeResolver validates proof and writes outcomes back to the ledger
"""
from typing import Any, Dict, Mapping

from .context import EngineContext
from .errors import ValidationError
from .services.escrow import EscrowService
from .services.trust import (
    ReputationService, RiskAssessor, TrustEventLedger, TrustScoreCalculator,
    VerificationService,
)


class TrustEscrowEngine:

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.ledger = TrustEventLedger(ctx)
        self.calculator = TrustScoreCalculator(ctx)
        self.risk = RiskAssessor(ctx)
        self.escrow = EscrowService(ctx)
        self.reputation = ReputationService(ctx)
        self.verification = VerificationService(ctx)

    def calculate_trust_score(self, user_id: str) -> Dict[str, Any]:
        return self.calculator.calculate_trust_score(user_id).to_dict()

    def assess_transaction_risk(self, client_id: str, provider_id: str, amount, service_type: str) -> Dict[str, Any]:
        return self.risk.assess_transaction_risk(client_id, provider_id, amount, service_type).to_dict()

    def create_escrow(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(request, Mapping):
            raise ValidationError("Escrow request must be a mapping")
        known = {
            "client_id", "provider_id", "service_id", "amount",
            "scheduled_time", "location_data", "service_type",
        }
        unknown = set(request) - known
        if unknown:
            raise ValidationError(f"Unknown escrow request fields: {sorted(unknown)}")
        missing = {"client_id", "provider_id", "service_id", "amount"} - set(request)
        if missing:
            raise ValidationError(f"Missing escrow request fields: {sorted(missing)}")
        return self.escrow.create_escrow(**request)

    def confirm_completion(self, transaction_id: str, proof: Any) -> Dict[str, Any]:
        return self.escrow.confirm_completion(transaction_id, proof)

    def initiate_dispute(self, transaction_id: str, dispute_data: Any, initiator_id: str) -> Dict[str, Any]:
        return self.escrow.initiate_dispute(transaction_id, dispute_data, initiator_id)

    def resolve_dispute(self, transaction_id: str, resolution: Any) -> Dict[str, Any]:
        return self.escrow.resolve_dispute(transaction_id, resolution)

    def cancel_escrow(self, transaction_id: str, reason: str, actor_id: str = None) -> Dict[str, Any]:
        return self.escrow.cancel_escrow(transaction_id, reason, actor_id)

    def get_escrow_status(self, transaction_id: str) -> Dict[str, Any]:
        return self.escrow.get_escrow_status(transaction_id)
