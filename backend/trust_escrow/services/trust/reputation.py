"""
Reputation Service

User-facing trust events outside the escrow lifecycle: registration,
login, reviews, fraud reports, and the trust leaderboard.
"""
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_

from ...database import atomic
from ...errors import NotFoundError, PreconditionError, ValidationError
from ...models.db_models import (
    ReviewDB, TransactionDB, TransactionStatus, TrustEventType, UserDB,
)
from .calculator import TrustScoreCalculator
from .ledger import TrustEventLedger

logger = logging.getLogger(__name__)


class ReputationService:

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db
        self.config = ctx.config
        self.ledger = TrustEventLedger(ctx)
        self.calculator = TrustScoreCalculator(ctx)

    def record_registration(self, user_id: str, source: Optional[str] = None):
        return self.ledger.record(user_id, TrustEventType.REGISTRATION, {"source": source})

    def record_login(self, user_id: str, ip_address: Optional[str] = None):
        """Login event; also refreshes last_active."""
        with atomic(self.db):
            event = self.ledger.append(user_id, TrustEventType.LOGIN, {"ip_address": ip_address})
            user = self.db.query(UserDB).filter(UserDB.id == user_id).one()
            user.last_active = self.ctx.now()
        return event

    # =========================================================================
    # REVIEWS
    # =========================================================================

    def review_reputation_delta(self, rating: int) -> int:
        table = self.config.reputation
        if rating >= 4:
            return table.review_positive
        if rating >= 3:
            return 0
        return table.review_negative

    def record_review(
        self,
        reviewer_id: str,
        transaction_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Review the counterparty of a completed transaction.

        Reputation moves by the rating band, then the reviewee's trust score
        is recalculated in the same unit of work.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(f"Rating must be an integer 1-5, got {rating!r}")

        with atomic(self.db):
            transaction = (
                self.db.query(TransactionDB)
                .filter(
                    TransactionDB.id == transaction_id,
                    TransactionDB.status == TransactionStatus.COMPLETED,
                    or_(TransactionDB.client_id == reviewer_id, TransactionDB.provider_id == reviewer_id),
                )
                .first()
            )
            if transaction is None:
                raise NotFoundError("Reviewable transaction", transaction_id)

            existing = self.db.query(ReviewDB).filter(
                ReviewDB.transaction_id == transaction_id,
                ReviewDB.reviewer_id == reviewer_id,
            ).first()
            if existing is not None:
                raise PreconditionError("Review already submitted")

            reviewee_id = (
                transaction.provider_id if transaction.client_id == reviewer_id else transaction.client_id
            )
            review = ReviewDB(
                id=str(uuid4()),
                transaction_id=transaction_id,
                reviewer_id=reviewer_id,
                reviewee_id=reviewee_id,
                rating=rating,
                comment=comment,
                created_at=self.ctx.now(),
            )
            self.db.add(review)

            self.ledger.append(
                reviewee_id,
                TrustEventType.REVIEW_RECEIVED,
                {"rating": rating, "comment_provided": bool(comment), "reviewer_id": reviewer_id},
                trust_delta=0,
                reputation_delta=self.review_reputation_delta(rating),
                transaction_id=transaction_id,
            )
            score = self.calculator.recalculate(reviewee_id)

        return {
            "review_id": review.id,
            "reviewee_id": reviewee_id,
            "rating": rating,
            "trust_score": score.score,
        }

    # =========================================================================
    # FRAUD
    # =========================================================================

    def report_fraud(
        self,
        reporter_id: str,
        reported_user_id: str,
        reason: str,
        transaction_id: Optional[str] = None,
    ):
        """Negative trust and reputation event against the reported user."""
        if not reason:
            raise ValidationError("Reported user ID and reason are required")
        if reporter_id == reported_user_id:
            raise ValidationError("Users cannot report themselves")

        with atomic(self.db):
            if self.db.query(UserDB.id).filter(UserDB.id == reporter_id).first() is None:
                raise NotFoundError("User", reporter_id)

            table = self.config.reputation
            event = self.ledger.append(
                reported_user_id,
                TrustEventType.FRAUD_REPORTED,
                {"reporter_id": reporter_id, "reason": reason, "transaction_id": transaction_id},
                trust_delta=table.fraud_trust,
                reputation_delta=table.fraud_reputation,
                transaction_id=transaction_id,
            )

        logger.warning(f"Fraud reported against {reported_user_id} by {reporter_id}: {reason}")
        return event

    # =========================================================================
    # LEADERBOARD
    # =========================================================================

    def leaderboard(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Users with a positive trust score, best first."""
        if limit < 1:
            raise ValidationError("Limit must be positive")

        txn_count = func.count(TransactionDB.id)
        rows = (
            self.db.query(
                UserDB.id, UserDB.username, UserDB.verification_tier,
                UserDB.trust_score, UserDB.reputation_score, txn_count,
            )
            .outerjoin(
                TransactionDB,
                or_(TransactionDB.provider_id == UserDB.id, TransactionDB.client_id == UserDB.id),
            )
            .filter(UserDB.trust_score > 0)
            .group_by(
                UserDB.id, UserDB.username, UserDB.verification_tier,
                UserDB.trust_score, UserDB.reputation_score,
            )
            .order_by(UserDB.trust_score.desc(), UserDB.reputation_score.desc(), UserDB.username.asc())
            .limit(limit)
            .all()
        )
        return [
            {
                "rank": index + 1,
                "user_id": row[0],
                "username": row[1],
                "verification_tier": row[2],
                "trust_score": row[3],
                "reputation_score": row[4],
                "total_transactions": int(row[5] or 0),
            }
            for index, row in enumerate(rows)
        ]
