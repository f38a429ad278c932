"""
Escrow Service

Orchestrates the held-funds lifecycle: risk gate, payment port, state
machine, proof validation and trust ledger.

Every transition runs inside one atomic() block:
  read status -> validate -> write status + dependent fields -> ledger events
  -> external capture/refund/transfer -> commit
A failure anywhere rolls the database back to the prior state. Payment port
failures surface as ExternalPortError; callers own retries.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from ...database import atomic
from ...errors import (
    ExternalPortError, NotFoundError, PreconditionError, RiskBlockedError,
    TrustEscrowError, ValidationError,
)
from ...models.db_models import (
    DisputeCaseStatus, DisputeWinner, ServiceDB, TransactionDB,
    TransactionStatus, TrustEventType, UserDB,
)
from ...models.schemas import (
    CompletionProof, DisputeRecord, DisputeRequest, EscrowRequest, Resolution,
    parse_payload,
)
from ...ports import try_mirror
from ..trust.ledger import TrustEventLedger
from ..trust.risk import RiskAssessor
from .dispute_resolver import DisputeResolver
from .state_machine import EscrowStateMachine

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class EscrowService:
    """
    Lifecycle operations for escrowed transactions.

    createEscrow -> escrowed
    confirm_completion: escrowed -> completed
    initiate_dispute:   escrowed -> disputed
    cancel_escrow:      escrowed -> cancelled
    resolve_dispute:    disputed -> resolved
    """

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db
        self.config = ctx.config
        self.state_machine = EscrowStateMachine()
        self.risk = RiskAssessor(ctx)
        self.resolver = DisputeResolver(ctx)
        self.ledger = TrustEventLedger(ctx)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _port(self):
        if self.ctx.payment_port is None:
            raise ExternalPortError("configure", "no payment port configured")
        return self.ctx.payment_port

    def _call_port(self, operation: str, fn: Callable, *args):
        """Run a port call, normalising foreign exceptions to ExternalPortError."""
        try:
            return fn(*args)
        except TrustEscrowError:
            raise
        except Exception as e:
            logger.error(f"Payment port {operation} failed: {e}")
            raise ExternalPortError(operation, str(e)) from e

    def _get_transaction(self, transaction_id: str) -> TransactionDB:
        transaction = (
            self.db.query(TransactionDB)
            .filter(TransactionDB.id == transaction_id)
            .with_for_update()
            .first()
        )
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def split_amount(self, amount: Decimal):
        """(platform_fee, provider_amount), both rounded to cents."""
        amount = Decimal(amount)
        fee = (amount * Decimal(str(self.config.platform_fee_rate))).quantize(CENTS, rounding=ROUND_HALF_UP)
        return fee, amount - fee

    def _capture_and_pay(self, transaction: TransactionDB) -> Dict[str, Any]:
        """Capture the hold and transfer the provider's share."""
        port = self._port()
        self._call_port("capture", port.capture, transaction.payment_hold_id)

        fee, provider_amount = self.split_amount(transaction.amount)
        provider = self.db.query(UserDB).filter(UserDB.id == transaction.provider_id).one()
        destination = provider.payout_account or provider.id
        reference = self._call_port("transfer", port.transfer, destination, provider_amount)

        return {
            "platform_fee": str(fee),
            "provider_amount": str(provider_amount),
            "destination": destination,
            "transfer_reference": reference,
        }

    def _release_hold(self, hold_id: str) -> None:
        """Compensating refund after a failed create. Logged, never raised."""
        try:
            self._port().refund(hold_id)
        except Exception as e:
            logger.error(f"Could not release hold {hold_id} after failed escrow creation: {e}")

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_escrow(
        self,
        client_id: str,
        provider_id: str,
        service_id: str,
        amount,
        scheduled_time=None,
        location_data=None,
        service_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Risk-gate a booking and open a funds hold.

        Raises:
            ValidationError: malformed request
            NotFoundError: unknown user or service
            RiskBlockedError: assessed as high risk, no row created
            PreconditionError: an escrow for this client/provider/service is already open
            ExternalPortError: hold failed
        """
        request = parse_payload(EscrowRequest, {
            "client_id": client_id,
            "provider_id": provider_id,
            "service_id": service_id,
            "amount": amount,
            "scheduled_time": scheduled_time,
            "location_data": location_data,
            "service_type": service_type,
        })

        listing = self.db.query(ServiceDB).filter(ServiceDB.id == request.service_id).first()
        if listing is None:
            raise NotFoundError("Service", request.service_id)

        assessment = self.risk.assess_transaction_risk(
            request.client_id, request.provider_id, request.amount,
            request.service_type or listing.service_type,
        )
        if assessment.is_blocked:
            logger.warning(
                f"Escrow blocked for {request.client_id} -> {request.provider_id}: {assessment.risk_factors}"
            )
            raise RiskBlockedError(assessment.risk_score, assessment.risk_factors, assessment.recommendations)

        if self._find_open_escrow(request) is not None:
            raise PreconditionError("An escrow for this client, provider and service is already open")

        port = self._port()
        hold_id = self._call_port("hold", port.hold, request.amount)

        try:
            with atomic(self.db):
                transaction = TransactionDB(
                    id=str(uuid4()),
                    client_id=request.client_id,
                    provider_id=request.provider_id,
                    service_id=request.service_id,
                    amount=request.amount,
                    status=TransactionStatus.ESCROWED,
                    scheduled_time=request.scheduled_time,
                    location_data=(
                        request.location_data.model_dump(mode="json") if request.location_data else None
                    ),
                    payment_hold_id=hold_id,
                    created_at=self.ctx.now(),
                )
                self.db.add(transaction)
                self.db.flush()

                transaction.escrow_address = try_mirror(self.ctx.mirror, transaction)
        except IntegrityError as e:
            self._release_hold(hold_id)
            raise PreconditionError(
                "An escrow for this client, provider and service is already open"
            ) from e
        except Exception:
            self._release_hold(hold_id)
            raise

        logger.info(f"Escrow {transaction.id} opened: {request.amount} held as {hold_id}")

        return {
            "transaction_id": transaction.id,
            "status": transaction.status.value,
            "amount": str(transaction.amount),
            "created_at": transaction.created_at.isoformat(),
            "payment_hold_id": hold_id,
            "escrow_address": transaction.escrow_address,
            "risk_assessment": assessment.to_dict(),
        }

    def _find_open_escrow(self, request: EscrowRequest) -> Optional[TransactionDB]:
        return self.db.query(TransactionDB).filter(
            TransactionDB.client_id == request.client_id,
            TransactionDB.provider_id == request.provider_id,
            TransactionDB.service_id == request.service_id,
            TransactionDB.status == TransactionStatus.ESCROWED,
        ).first()

    # =========================================================================
    # COMPLETE
    # =========================================================================

    def confirm_completion(self, transaction_id: str, completion_proof: Any) -> Dict[str, Any]:
        """
        Accept proof, capture funds and pay the provider.

        Raises:
            PreconditionError: not escrowed
            ValidationError: proof malformed or a supplied check failed
            ExternalPortError: capture or transfer failed (nothing committed)
        """
        proof = parse_payload(CompletionProof, completion_proof)

        with atomic(self.db):
            transaction = self._get_transaction(transaction_id)
            self.state_machine.require(transaction, TransactionStatus.ESCROWED)

            validation = self.resolver.validate_completion_proof(transaction, proof)
            if not validation.valid:
                raise ValidationError(f"Invalid completion proof: {validation.reason}")

            now = self.ctx.now()
            self.state_machine.transition(transaction, TransactionStatus.COMPLETED)
            transaction.completion_proof = proof.model_dump(mode="json")
            transaction.completed_at = now

            credit = self.config.reputation.completion_reputation
            for user_id, role in ((transaction.client_id, "client"), (transaction.provider_id, "provider")):
                self.ledger.append(
                    user_id,
                    TrustEventType.TRANSACTION_COMPLETED,
                    {"role": role, "amount": str(transaction.amount)},
                    reputation_delta=credit,
                    transaction_id=transaction.id,
                )

            payout = self._capture_and_pay(transaction)

        return {
            "transaction_id": transaction_id,
            "status": TransactionStatus.COMPLETED.value,
            "completed_at": now.isoformat(),
            "validations": [v.type for v in validation.validations],
            "payout": payout,
        }

    # =========================================================================
    # DISPUTE
    # =========================================================================

    def initiate_dispute(self, transaction_id: str, dispute_data: Any, initiator_id: str) -> Dict[str, Any]:
        """
        Freeze an escrowed transaction and open a dispute case.

        Raises:
            PreconditionError: not escrowed
            ValidationError: missing reason, or initiator is not a party
        """
        request = parse_payload(DisputeRequest, dispute_data)

        with atomic(self.db):
            transaction = self._get_transaction(transaction_id)
            self.state_machine.require(transaction, TransactionStatus.ESCROWED)

            if initiator_id not in (transaction.client_id, transaction.provider_id):
                raise ValidationError("Only the client or provider can open a dispute")

            case_id = self._call_port(
                "open_case", self.ctx.dispute_cases.open_case, transaction, request.reason, initiator_id
            )

            self.state_machine.transition(transaction, TransactionStatus.DISPUTED)
            record = DisputeRecord(
                dispute_id=case_id,
                initiator=initiator_id,
                reason=request.reason,
                evidence=request.evidence,
                timestamp=self.ctx.now(),
                status=DisputeCaseStatus.OPEN,
            )
            transaction.dispute_data = record.model_dump(mode="json")
            transaction.dispute_case_id = case_id

            # Funds stay on hold; nothing is captured or transferred while disputed
            logger.info(f"Dispute {case_id} opened by {initiator_id}; transfers halted for hold {transaction.payment_hold_id}")

        return {"dispute_id": case_id, "status": TransactionStatus.DISPUTED.value}

    def resolve_dispute(self, transaction_id: str, resolution: Any) -> Dict[str, Any]:
        """
        Settle a dispute: refund the client or pay the provider, then apply
        the asymmetric reputation table.

        Raises:
            PreconditionError: not disputed
            ValidationError: winner missing or not client/provider
            ExternalPortError: refund/capture/transfer failed (nothing committed)
        """
        resolution = parse_payload(Resolution, resolution)

        with atomic(self.db):
            transaction = self._get_transaction(transaction_id)
            self.state_machine.require(transaction, TransactionStatus.DISPUTED)

            now = self.ctx.now()
            resolution = resolution.model_copy(update={"resolved_at": resolution.resolved_at or now})

            self.state_machine.transition(transaction, TransactionStatus.RESOLVED)
            record = parse_payload(DisputeRecord, transaction.dispute_data)
            record = record.model_copy(update={"status": DisputeCaseStatus.RESOLVED, "resolution": resolution})
            transaction.dispute_data = record.model_dump(mode="json")
            transaction.completion_proof = self._settlement_proof(resolution).model_dump(mode="json")

            self.resolver.apply_resolution_reputation(transaction, resolution.winner)

            payout = None
            if resolution.winner == DisputeWinner.CLIENT:
                port = self._port()
                self._call_port("refund", port.refund, transaction.payment_hold_id)
            else:
                payout = self._capture_and_pay(transaction)

        return {
            "resolution": resolution.winner.value,
            "transaction_id": transaction_id,
            "status": TransactionStatus.RESOLVED.value,
            "payout": payout,
        }

    def _settlement_proof(self, resolution: Resolution) -> CompletionProof:
        """Proof bundle recorded on a resolved row: the proof-shaped part of the evidence, or empty."""
        if isinstance(resolution.evidence, dict):
            try:
                return parse_payload(CompletionProof, resolution.evidence)
            except ValidationError:
                logger.debug("Resolution evidence is not a proof bundle; recording empty proof")
        return CompletionProof()

    # =========================================================================
    # CANCEL
    # =========================================================================

    def cancel_escrow(self, transaction_id: str, reason: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Refund an escrowed hold before service. No reputation change."""
        if not reason:
            raise ValidationError("Cancellation reason is required")

        with atomic(self.db):
            transaction = self._get_transaction(transaction_id)
            self.state_machine.require(transaction, TransactionStatus.ESCROWED)

            now = self.ctx.now()
            self.state_machine.transition(transaction, TransactionStatus.CANCELLED)
            transaction.cancelled_at = now
            transaction.cancellation_reason = reason

            port = self._port()
            self._call_port("refund", port.refund, transaction.payment_hold_id)

        logger.info(f"Escrow {transaction_id} cancelled by {actor_id or 'system'}: {reason}")
        return {
            "transaction_id": transaction_id,
            "status": TransactionStatus.CANCELLED.value,
            "cancelled_at": now.isoformat(),
        }

    # =========================================================================
    # READ
    # =========================================================================

    def get_escrow_status(self, transaction_id: str) -> Dict[str, Any]:
        """Display projection: transaction joined with usernames and service title."""
        client = aliased(UserDB)
        provider = aliased(UserDB)

        row = (
            self.db.query(TransactionDB, client.username, provider.username, ServiceDB.title)
            .join(client, TransactionDB.client_id == client.id)
            .join(provider, TransactionDB.provider_id == provider.id)
            .join(ServiceDB, TransactionDB.service_id == ServiceDB.id)
            .filter(TransactionDB.id == transaction_id)
            .first()
        )
        if row is None:
            raise NotFoundError("Transaction", transaction_id)

        transaction, client_name, provider_name, service_title = row
        return {
            "transaction_id": transaction.id,
            "status": transaction.status.value,
            "amount": str(transaction.amount),
            "client_id": transaction.client_id,
            "client": client_name,
            "provider_id": transaction.provider_id,
            "provider": provider_name,
            "service_id": transaction.service_id,
            "service": service_title,
            "scheduled_time": transaction.scheduled_time.isoformat() if transaction.scheduled_time else None,
            "created_at": transaction.created_at.isoformat(),
            "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
            "dispute_data": transaction.dispute_data,
            "escrow_address": transaction.escrow_address,
            "terminal": self.state_machine.is_terminal_state(transaction.status),
        }

    def is_healthy(self) -> Dict[str, bool]:
        mirror = self.ctx.mirror
        return {
            "payment_port": self.ctx.payment_port is not None,
            "mirror": bool(mirror is not None and mirror.enabled),
        }
