"""
Risk Assessor

Rule-based, additive risk scoring for a proposed transaction between two
users. Points, not probabilities.

Monotone in amount: the only amount-dependent rules (required verification
tier, high amount for trust) can switch on as amount grows, never off.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from ...config import RiskRules, TrustEngineConfig
from ...errors import NotFoundError, ValidationError
from ...models.db_models import UserDB

logger = logging.getLogger(__name__)


class RiskLevel:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class PartySnapshot:
    """The user fields risk assessment reads."""
    user_id: str
    trust_score: int
    verification_tier: int
    created_at: datetime
    last_active: Optional[datetime]

    @classmethod
    def from_user(cls, user: UserDB) -> "PartySnapshot":
        return cls(
            user_id=user.id,
            trust_score=user.trust_score or 0,
            verification_tier=user.verification_tier or 0,
            created_at=user.created_at,
            last_active=user.last_active,
        )


@dataclass
class RiskAssessment:
    risk_level: str
    risk_score: int
    risk_factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    escrow_required: bool = False
    verification_required: bool = False
    required_tier: int = 1

    @property
    def is_blocked(self) -> bool:
        return self.risk_level == RiskLevel.HIGH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_level": self.risk_level,
            "risk_score": self.risk_score,
            "risk_factors": list(self.risk_factors),
            "recommendations": list(self.recommendations),
            "escrow_required": self.escrow_required,
            "verification_required": self.verification_required,
        }


# =============================================================================
# PURE RULES
# =============================================================================

def required_verification_tier(amount: Union[Decimal, float], rules: RiskRules) -> int:
    """Minimum tier both parties need for this amount."""
    for threshold in sorted(rules.tier_amount_thresholds, reverse=True):
        if amount > threshold:
            return rules.tier_amount_thresholds[threshold]
    return 1


def classify(risk_score: int, rules: RiskRules) -> str:
    if risk_score < rules.medium_threshold:
        return RiskLevel.LOW
    if risk_score < rules.high_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def get_risk_recommendations(risk_level: str, risk_factors: List[str]) -> List[str]:
    recommendations = []

    if "client_low_trust" in risk_factors or "provider_low_trust" in risk_factors:
        recommendations.append("Use escrow for payment protection")

    if ("client_insufficient_verification" in risk_factors
            or "provider_insufficient_verification" in risk_factors):
        recommendations.append("Complete identity verification before transaction")

    if "high_amount_for_trust" in risk_factors:
        recommendations.append("Consider starting with a smaller transaction to build trust")

    if risk_level == RiskLevel.HIGH:
        recommendations.append("Manual review required before proceeding")

    return recommendations


def score_risk(
    client: PartySnapshot,
    provider: PartySnapshot,
    amount: Union[Decimal, float],
    now: datetime,
    config: TrustEngineConfig,
) -> RiskAssessment:
    """Apply every rule to two snapshots. No I/O."""
    rules = config.risk
    factors: List[str] = []
    score = 0

    if client.trust_score < rules.low_trust_threshold:
        factors.append("client_low_trust")
        score += rules.client_low_trust_points
    if provider.trust_score < rules.low_trust_threshold:
        factors.append("provider_low_trust")
        score += rules.provider_low_trust_points

    required_tier = required_verification_tier(amount, rules)
    if client.verification_tier < required_tier:
        factors.append("client_insufficient_verification")
        score += rules.insufficient_verification_points
    if provider.verification_tier < required_tier:
        factors.append("provider_insufficient_verification")
        score += rules.insufficient_verification_points

    client_age_days = (now - client.created_at).total_seconds() / 86400
    if client_age_days < rules.new_account_days:
        factors.append("client_new_account")
        score += rules.new_account_points

    # A provider with no recorded activity counts as inactive
    if provider.last_active is None:
        provider_idle_days = float("inf")
    else:
        provider_idle_days = (now - provider.last_active).total_seconds() / 86400
    if provider_idle_days > rules.inactive_days:
        factors.append("provider_inactive")
        score += rules.inactive_points

    if amount > max(client.trust_score * rules.amount_trust_multiplier, rules.amount_floor):
        factors.append("high_amount_for_trust")
        score += rules.high_amount_points

    level = classify(score, rules)
    return RiskAssessment(
        risk_level=level,
        risk_score=score,
        risk_factors=factors,
        recommendations=get_risk_recommendations(level, factors),
        escrow_required=level != RiskLevel.LOW,
        verification_required=score > rules.verification_required_above,
        required_tier=required_tier,
    )


# =============================================================================
# ASSESSOR
# =============================================================================

class RiskAssessor:
    """Loads both parties' cached trust fields and scores the transaction."""

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db
        self.config = ctx.config

    def assess_transaction_risk(
        self,
        client_id: str,
        provider_id: str,
        amount: Union[Decimal, float, int, str],
        service_type: str = "service_booking",
    ) -> RiskAssessment:
        """
        Assess a proposed transaction.

        Raises:
            ValidationError: non-positive or non-numeric amount
            NotFoundError: either user missing (blocks creation, not retried)
        """
        try:
            amount = Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError(f"Amount is not a number: {amount!r}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")

        users = self.db.query(UserDB).filter(UserDB.id.in_([client_id, provider_id])).all()
        by_id = {u.id: u for u in users}
        if client_id not in by_id:
            raise NotFoundError("User", client_id)
        if provider_id not in by_id:
            raise NotFoundError("User", provider_id)

        assessment = score_risk(
            PartySnapshot.from_user(by_id[client_id]),
            PartySnapshot.from_user(by_id[provider_id]),
            amount,
            self.ctx.now(),
            self.config,
        )

        logger.info(
            f"Risk {assessment.risk_level} ({assessment.risk_score}) for {service_type} "
            f"{client_id} -> {provider_id}, amount {amount}: {assessment.risk_factors}"
        )
        return assessment
