"""
Verification Tiers

Tier catalogue and upgrade recording. The identity subsystem performs the
actual checks (OTP, document, biometrics...) and hands the per-requirement
results here; this module decides whether they satisfy a tier and records
the upgrade on the trust ledger.
"""
import logging
from typing import Any, Dict, List

from ...database import atomic
from ...errors import NotFoundError, ValidationError
from ...models.db_models import TrustEventType, UserDB
from .ledger import TrustEventLedger

logger = logging.getLogger(__name__)


VERIFICATION_TIERS = {
    1: {
        "name": "Basic",
        "requirements": ["phone", "email"],
        "description": "Basic verification with phone and email",
    },
    2: {
        "name": "Advanced",
        "requirements": ["phone", "email", "id_verification", "facial_biometrics"],
        "description": "Advanced verification with government ID and facial biometrics",
    },
    3: {
        "name": "Pro",
        "requirements": ["phone", "email", "id_verification", "facial_biometrics", "behavioral_analysis"],
        "description": "Pro verification with behavioral analysis",
    },
    4: {
        "name": "Elite",
        "requirements": [
            "phone", "email", "id_verification", "facial_biometrics",
            "behavioral_analysis", "decentralized_id",
        ],
        "description": "Elite verification with decentralized identity",
    },
}


def _check_tier(tier) -> int:
    if isinstance(tier, bool) or not isinstance(tier, int) or tier not in VERIFICATION_TIERS:
        raise ValidationError(f"Invalid tier {tier!r}. Must be between 1 and 4.")
    return tier


class VerificationService:

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db
        self.ledger = TrustEventLedger(ctx)

    def requirements(self, tier: int) -> Dict[str, Any]:
        """Requirements for a tier."""
        tier = _check_tier(tier)
        info = VERIFICATION_TIERS[tier]
        return {
            "tier": tier,
            "name": info["name"],
            "requirements": list(info["requirements"]),
            "description": info["description"],
        }

    def apply_verification(self, user_id: str, tier: int, results: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a verification attempt.

        results maps requirement name -> {"verified": bool, ...}. When every
        requirement of the tier is verified and the tier is above the user's
        current one, the tier is raised and a verification_upgrade event is
        appended in one unit of work.
        """
        tier = _check_tier(tier)
        if not isinstance(results, dict):
            raise ValidationError("Verification results must be a mapping")

        required = VERIFICATION_TIERS[tier]["requirements"]
        failed: List[str] = [
            name for name in required
            if not (isinstance(results.get(name), dict) and results[name].get("verified") is True)
        ]

        with atomic(self.db):
            user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
            if user is None:
                raise NotFoundError("User", user_id)

            if failed:
                logger.info(f"Verification for {user_id} tier {tier} failed: {failed}")
                return {"success": False, "tier": None, "failed_requirements": failed}

            if tier <= (user.verification_tier or 0):
                return {"success": True, "tier": user.verification_tier, "failed_requirements": []}

            user.verification_tier = tier
            self.ledger.append(
                user_id,
                TrustEventType.VERIFICATION_UPGRADE,
                {"tier": tier, "results": {name: results[name] for name in required}},
                trust_delta=self.ctx.config.reputation.verification_upgrade_trust,
            )

        return {"success": True, "tier": tier, "failed_requirements": []}
