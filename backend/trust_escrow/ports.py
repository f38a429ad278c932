"""
External Ports

Interfaces to collaborators the engine does not own:
- PaymentPort: custodial hold/capture/refund/transfer. Authoritative.
- EscrowMirror: optional secondary record (e.g. on-chain). Never authoritative.
- DisputeCaseRegistry: external case record for a dispute.

Port calls are blocking and fallible. No retry here; callers own backoff.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .models.db_models import TransactionDB, utcnow

logger = logging.getLogger(__name__)


class PaymentPort(ABC):
    """Custodial payment hold adapter (card, mobile money, crypto...)."""

    @abstractmethod
    def hold(self, amount: Decimal) -> str:
        """Open a hold for amount. Returns the hold id."""

    @abstractmethod
    def capture(self, hold_id: str) -> None:
        """Capture previously held funds."""

    @abstractmethod
    def refund(self, hold_id: str) -> None:
        """Release the hold back to the payer."""

    @abstractmethod
    def transfer(self, destination: str, amount: Decimal) -> str:
        """Pay out captured funds. Returns a transfer reference."""


class EscrowMirror(ABC):
    """Secondary escrow record. Absent or failing mirrors never affect the hold."""

    enabled: bool = True

    @abstractmethod
    def mirror(self, transaction: TransactionDB) -> str:
        """Record the escrow and return an external reference (address/tx hash)."""


class DisputeCaseRegistry(ABC):
    """Where dispute cases are opened for review."""

    @abstractmethod
    def open_case(self, transaction: TransactionDB, reason: str, initiator_id: str) -> str:
        """Open a case and return its id."""


def try_mirror(mirror: Optional[EscrowMirror], transaction: TransactionDB) -> Optional[str]:
    """
    Best-effort mirroring.

    None mirror or disabled mirror -> None. A failing mirror is logged and
    yields None; the custodial hold stays authoritative.
    """
    if mirror is None or not mirror.enabled:
        return None
    try:
        return mirror.mirror(transaction)
    except Exception as e:
        logger.warning(f"Escrow mirror failed for transaction {transaction.id}, using custodial hold only: {e}")
        return None


# =============================================================================
# IN-PROCESS IMPLEMENTATIONS
# =============================================================================

@dataclass
class LocalDisputeCaseRegistry(DisputeCaseRegistry):
    """Generates case ids in-process. Used when no external case system is wired."""
    clock: Callable[[], datetime] = utcnow

    def open_case(self, transaction: TransactionDB, reason: str, initiator_id: str) -> str:
        case_id = f"dispute_{transaction.id}_{int(self.clock().timestamp() * 1000)}"
        logger.info(f"Created dispute case: {case_id}")
        return case_id


@dataclass
class HoldRecord:
    amount: Decimal
    state: str = "held"  # held | captured | refunded


@dataclass
class InMemoryPaymentPort(PaymentPort):
    """
    Payment port backed by dicts. For local runs and tests.

    fail_on names operations that should raise, to exercise rollback paths.
    """
    holds: Dict[str, HoldRecord] = field(default_factory=dict)
    transfers: List[Dict[str, object]] = field(default_factory=list)
    calls: List[str] = field(default_factory=list)
    fail_on: set = field(default_factory=set)

    def _check(self, operation: str):
        self.calls.append(operation)
        if operation in self.fail_on:
            raise RuntimeError(f"simulated {operation} failure")

    def hold(self, amount: Decimal) -> str:
        self._check("hold")
        hold_id = f"hold_{uuid4().hex[:16]}"
        self.holds[hold_id] = HoldRecord(amount=Decimal(amount))
        return hold_id

    def capture(self, hold_id: str) -> None:
        self._check("capture")
        record = self.holds[hold_id]
        if record.state != "held":
            raise RuntimeError(f"hold {hold_id} is {record.state}")
        record.state = "captured"

    def refund(self, hold_id: str) -> None:
        self._check("refund")
        record = self.holds[hold_id]
        if record.state != "held":
            raise RuntimeError(f"hold {hold_id} is {record.state}")
        record.state = "refunded"

    def transfer(self, destination: str, amount: Decimal) -> str:
        self._check("transfer")
        reference = f"tr_{uuid4().hex[:16]}"
        self.transfers.append({"destination": destination, "amount": Decimal(amount), "reference": reference})
        return reference
