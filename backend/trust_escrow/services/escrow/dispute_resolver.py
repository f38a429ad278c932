"""
Dispute Resolver

Two jobs:
- validate completion proof (GPS, timing, media) against the transaction
- map a dispute winner to reputation consequences and write them to the ledger

Proof validity requires every supplied check to pass. A proof type that was
not supplied (or has nothing to compare against) adds no entry and is not a
failure.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ...config import TrustEngineConfig
from ...models.db_models import DisputeWinner, TransactionDB, TrustEventType
from ...models.schemas import CompletionProof, LocationData, parse_payload
from ..trust.ledger import TrustEventLedger

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371e3


@dataclass
class ProofCheck:
    type: str
    valid: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProofValidation:
    valid: bool
    validations: List[ProofCheck]
    reason: str

    @property
    def failed(self) -> List[str]:
        return [v.type for v in self.validations if not v.valid]


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


class DisputeResolver:

    def __init__(self, ctx):
        self.ctx = ctx
        self.config: TrustEngineConfig = ctx.config
        self.ledger = TrustEventLedger(ctx)

    # =========================================================================
    # PROOF VALIDATION
    # =========================================================================

    def validate_completion_proof(self, transaction: TransactionDB, proof: Any) -> ProofValidation:
        proof = parse_payload(CompletionProof, proof)
        location = (
            parse_payload(LocationData, transaction.location_data)
            if transaction.location_data else None
        )
        return self.validate(proof, location, transaction.scheduled_time)

    def validate(
        self,
        proof: CompletionProof,
        location: Optional[LocationData],
        scheduled_time: Optional[datetime],
    ) -> ProofValidation:
        validations: List[ProofCheck] = []

        if proof.gps is not None and location is not None:
            distance = haversine_distance(
                proof.gps.lat, proof.gps.lng,
                location.coordinates.lat, location.coordinates.lng,
            )
            validations.append(ProofCheck(
                type="gps",
                valid=distance < self.config.gps_radius_meters,
                details={"distance": distance},
            ))

        if proof.timestamp is not None and scheduled_time is not None:
            minutes = abs((proof.timestamp - scheduled_time).total_seconds()) / 60
            validations.append(ProofCheck(
                type="timing",
                valid=minutes < self.config.timing_window_minutes,
                details={"time_difference_minutes": minutes},
            ))

        if proof.media:
            # Content checks happen elsewhere; presence is enough here
            validations.append(ProofCheck(
                type="media",
                valid=True,
                details={"media_count": len(proof.media)},
            ))

        failed = [v.type for v in validations if not v.valid]
        return ProofValidation(
            valid=not failed,
            validations=validations,
            reason=f"Failed validations: {', '.join(failed)}" if failed else "All validations passed",
        )

    # =========================================================================
    # RESOLUTION CONSEQUENCES
    # =========================================================================

    def resolution_deltas(self, winner: DisputeWinner) -> Tuple[int, int]:
        """(client_delta, provider_delta) reputation for a winner."""
        table = self.config.reputation
        if DisputeWinner(winner) == DisputeWinner.PROVIDER:
            return table.provider_wins_client, table.provider_wins_provider
        return table.client_wins_client, table.client_wins_provider

    def apply_resolution_reputation(self, transaction: TransactionDB, winner: DisputeWinner) -> None:
        """One dispute_outcome event per party. Flushes inside the caller's unit."""
        winner = DisputeWinner(winner)
        client_delta, provider_delta = self.resolution_deltas(winner)

        self.ledger.append(
            transaction.client_id,
            TrustEventType.DISPUTE_OUTCOME,
            {"winner": winner.value, "role": "client"},
            reputation_delta=client_delta,
            transaction_id=transaction.id,
        )
        self.ledger.append(
            transaction.provider_id,
            TrustEventType.DISPUTE_OUTCOME,
            {"winner": winner.value, "role": "provider"},
            reputation_delta=provider_delta,
            transaction_id=transaction.id,
        )
        logger.info(
            f"Dispute on {transaction.id} resolved for {winner.value}: "
            f"client {client_delta:+d}, provider {provider_delta:+d}"
        )
