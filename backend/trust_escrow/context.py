"""
Engine Context

Explicit handle bundle passed to every service constructor: storage session,
payment port, optional mirror, dispute case registry, configuration and clock.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import DEFAULT_CONFIG, TrustEngineConfig
from .models.db_models import utcnow
from .ports import (
    DisputeCaseRegistry, EscrowMirror, LocalDisputeCaseRegistry, PaymentPort,
)


@dataclass
class EngineContext:
    db: Session
    payment_port: Optional[PaymentPort] = None
    mirror: Optional[EscrowMirror] = None
    dispute_cases: Optional[DisputeCaseRegistry] = None
    config: TrustEngineConfig = DEFAULT_CONFIG
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self):
        # Local case ids follow the engine clock, including later swaps of ctx.clock
        if self.dispute_cases is None:
            self.dispute_cases = LocalDisputeCaseRegistry(clock=self.now)

    def now(self) -> datetime:
        return self.clock()
