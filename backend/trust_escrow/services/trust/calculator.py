"""
Trust Score Calculator

Derives a 0-1000 trust score from transaction statistics, account metadata
and recency of activity.

Pipeline:
1. Gather transaction stats (user as client or provider)
2. Five component scores in [0, 1]
3. Weighted sum with TrustWeights
4. Recency decay: max(floor, exp(-days_inactive / window))
5. Scale to 0-1000, clamp, persist as users.trust_score

Reconciliation: a recalculation always re-derives from the transactions
table and overwrites trust_score. Ledger deltas applied between two
recalculations are visible until the next one replaces them.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, func, or_

from ...config import TrustEngineConfig
from ...database import atomic
from ...errors import NotFoundError
from ...models.db_models import TransactionDB, TransactionStatus, UserDB
from .ledger import TrustEventLedger

logger = logging.getLogger(__name__)

# Only open disputes count; a settled dispute no longer weighs on the score
DISPUTED_STATUSES = (TransactionStatus.DISPUTED,)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class TransactionStats:
    total: int = 0
    successful: int = 0
    disputed: int = 0
    avg_completion_hours: Optional[float] = None


@dataclass
class TrustScoreResult:
    score: int
    components: Dict[str, float]
    tier: str
    config_version: str
    calculated_at: datetime
    history: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "components": dict(self.components),
            "tier": self.tier,
            "config_version": self.config_version,
            "calculated_at": self.calculated_at.isoformat(),
            "history": dict(self.history),
        }


# =============================================================================
# PURE SCORING
# =============================================================================

def get_trust_tier(score: float, config: TrustEngineConfig) -> str:
    """Map a 0-1000 score to its tier label."""
    for label, threshold in sorted(config.tier_thresholds.items(), key=lambda kv: -kv[1]):
        if score >= threshold:
            return label
    return config.lowest_tier_label


def compute_components(
    stats: TransactionStats,
    created_at: datetime,
    verification_tier: int,
    now: datetime,
    config: TrustEngineConfig,
) -> Dict[str, float]:
    """The five raw component scores, each in [0, 1]."""
    prior = config.neutral_prior

    if stats.total > 0:
        transaction_success = stats.successful / stats.total
        dispute_resolution = 1 - (stats.disputed / stats.total)
    else:
        # New accounts start neutral
        transaction_success = prior
        dispute_resolution = prior

    if stats.avg_completion_hours is not None:
        response_time = max(0.0, 1 - (stats.avg_completion_hours / config.response_reference_hours))
    else:
        response_time = prior

    age_days = max(0.0, (now - created_at).total_seconds() / 86400)
    account_age_months = age_days / config.days_per_month
    longevity = min(account_age_months / config.longevity_cap_months, 1.0)

    verification_level = min(max(verification_tier or 0, 0), 4) / 4

    return {
        "transaction_success": transaction_success,
        "response_time": response_time,
        "dispute_resolution": dispute_resolution,
        "longevity": longevity,
        "verification_level": verification_level,
    }


def decay_factor(last_active: Optional[datetime], now: datetime, config: TrustEngineConfig) -> float:
    """Recency multiplier; never below the configured floor."""
    if last_active is None:
        return config.decay_floor
    days_inactive = max(0.0, (now - last_active).total_seconds() / 86400)
    return max(config.decay_floor, math.exp(-days_inactive / config.decay_window_days))


def weighted_score(components: Dict[str, float], decay: float, config: TrustEngineConfig) -> int:
    """Weighted, decayed, scaled and clamped composite."""
    raw = sum(components[name] * weight for name, weight in config.weights.as_dict().items())
    scaled = raw * decay * config.max_score
    return int(round(max(0, min(config.max_score, scaled))))


# =============================================================================
# CALCULATOR
# =============================================================================

class TrustScoreCalculator:
    """
    Recalculates and persists trust scores.

    Idempotent for unchanged inputs: with the same transactions, user row and
    clock reading, two calls return identical score and components.
    """

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db
        self.config = ctx.config
        self.ledger = TrustEventLedger(ctx)

    def gather_transaction_stats(self, user_id: str) -> TransactionStats:
        """Counts and mean completion time over every transaction the user is party to."""
        party_filter = or_(TransactionDB.client_id == user_id, TransactionDB.provider_id == user_id)

        total, successful, disputed = (
            self.db.query(
                func.count(TransactionDB.id),
                func.coalesce(func.sum(case((TransactionDB.status == TransactionStatus.COMPLETED, 1), else_=0)), 0),
                func.coalesce(func.sum(case((TransactionDB.status.in_(DISPUTED_STATUSES), 1), else_=0)), 0),
            )
            .filter(party_filter)
            .one()
        )

        # Averaged in Python so the SQL stays portable across dialects
        completions = (
            self.db.query(TransactionDB.created_at, TransactionDB.completed_at)
            .filter(party_filter, TransactionDB.completed_at.isnot(None))
            .all()
        )
        avg_hours = None
        if completions:
            hours = [(done - created).total_seconds() / 3600 for created, done in completions]
            avg_hours = sum(hours) / len(hours)

        return TransactionStats(
            total=int(total or 0),
            successful=int(successful or 0),
            disputed=int(disputed or 0),
            avg_completion_hours=avg_hours,
        )

    def recalculate(self, user_id: str) -> TrustScoreResult:
        """Recalculate and write trust_score inside the caller's unit of work."""
        user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
        if user is None:
            raise NotFoundError("User", user_id)

        now = self.ctx.now()
        stats = self.gather_transaction_stats(user_id)
        components = compute_components(stats, user.created_at, user.verification_tier, now, self.config)
        decay = decay_factor(user.last_active, now, self.config)
        score = weighted_score(components, decay, self.config)

        user.trust_score = score
        self.db.flush()

        logger.info(f"Trust score for {user_id}: {score} (decay={decay:.3f}, transactions={stats.total})")

        return TrustScoreResult(
            score=score,
            components=components,
            tier=get_trust_tier(score, self.config),
            config_version=self.config.version,
            calculated_at=now,
            history=self.ledger.windowed_summary(user_id),
        )

    def calculate_trust_score(self, user_id: str) -> TrustScoreResult:
        """Recalculate in its own unit of work."""
        with atomic(self.db):
            return self.recalculate(user_id)

    def get_trust_tier(self, score: float) -> str:
        return get_trust_tier(score, self.config)
