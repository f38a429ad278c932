"""
Trust Services

Ledger -> Calculator -> Risk. Reviews, fraud reports and verification
upgrades write through the ledger like every other trust event.
"""
from .ledger import TrustEventLedger, WindowedEvents
from .calculator import TrustScoreCalculator, TrustScoreResult, get_trust_tier
from .risk import RiskAssessor, RiskAssessment, RiskLevel, PartySnapshot, score_risk
from .verification import VerificationService, VERIFICATION_TIERS
from .reputation import ReputationService

__all__ = [
    'TrustEventLedger',
    'WindowedEvents',
    'TrustScoreCalculator',
    'TrustScoreResult',
    'get_trust_tier',
    'RiskAssessor',
    'RiskAssessment',
    'RiskLevel',
    'PartySnapshot',
    'score_risk',
    'VerificationService',
    'VERIFICATION_TIERS',
    'ReputationService',
]
