"""
Trust Event Ledger

Append-only record of scoring-relevant events per user.

Core Principles:
1. Rows are immutable. No updates, no deletes.
2. An event row and its score deltas land in the same unit of work.
3. Deltas floor at 0 on write. The 1000 ceiling belongs to the calculator.

append() only flushes; the caller's atomic() block owns the commit, so a
ledger write inside an escrow transition commits or rolls back with it.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy import func

from ...database import atomic
from ...errors import NotFoundError, ValidationError
from ...models.db_models import TrustEventDB, TrustEventType, UserDB
from ...models.schemas import parse_event_data

logger = logging.getLogger(__name__)


class WindowedEvents:
    """
    Events for one user newer than `since`, oldest first.

    Lazy: nothing is queried until iteration. Restartable: each iteration
    runs a fresh query, so iterating twice yields the same rows unless new
    events were appended in between.
    """

    def __init__(self, db, user_id: str, since: datetime, batch_size: int = 100):
        self.db = db
        self.user_id = user_id
        self.since = since
        self.batch_size = batch_size

    def _query(self):
        return (
            self.db.query(TrustEventDB)
            .filter(
                TrustEventDB.user_id == self.user_id,
                TrustEventDB.created_at > self.since,
            )
            .order_by(TrustEventDB.created_at.asc(), TrustEventDB.id.asc())
        )

    def __iter__(self) -> Iterator[TrustEventDB]:
        return iter(self._query().yield_per(self.batch_size))

    def count(self) -> int:
        return self._query().count()


class TrustEventLedger:
    """Writes trust events and applies their deltas to the user snapshot."""

    def __init__(self, ctx):
        self.ctx = ctx
        self.db = ctx.db

    # =========================================================================
    # WRITES
    # =========================================================================

    def append(
        self,
        user_id: str,
        event_type: TrustEventType,
        event_data: Optional[Dict[str, Any]] = None,
        trust_delta: int = 0,
        reputation_delta: int = 0,
        transaction_id: Optional[str] = None,
    ) -> TrustEventDB:
        """
        Append one event and apply its deltas. Flushes, does not commit.

        Raises:
            NotFoundError: unknown user
            ValidationError: unknown event type, or event_data does not match its payload
        """
        try:
            event_type = TrustEventType(event_type)
        except ValueError as e:
            raise ValidationError(f"Unknown trust event type: {event_type!r}") from e
        payload = parse_event_data(event_type, event_data)

        user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
        if user is None:
            raise NotFoundError("User", user_id)

        event = TrustEventDB(
            id=str(uuid4()),
            user_id=user_id,
            event_type=event_type,
            event_data=payload,
            trust_delta=trust_delta,
            reputation_delta=reputation_delta,
            transaction_id=transaction_id,
            created_at=self.ctx.now(),
        )
        self.db.add(event)

        if trust_delta or reputation_delta:
            user.trust_score = max(0, (user.trust_score or 0) + trust_delta)
            user.reputation_score = max(0, (user.reputation_score or 0) + reputation_delta)

        self.db.flush()
        logger.info(
            f"Trust event {event_type.value} for user {user_id}: "
            f"trust {trust_delta:+d}, reputation {reputation_delta:+d}"
        )
        return event

    def record(self, *args, **kwargs) -> TrustEventDB:
        """append() in its own unit of work."""
        with atomic(self.db):
            return self.append(*args, **kwargs)

    # =========================================================================
    # READS
    # =========================================================================

    def windowed_events(self, user_id: str, since: datetime) -> WindowedEvents:
        """Lazy, restartable sequence of events newer than since, ascending."""
        return WindowedEvents(self.db, user_id, since)

    def recent_events(self, user_id: str, days: int = None, limit: int = 50) -> List[TrustEventDB]:
        """Newest-first events inside the history window."""
        days = days if days is not None else self.ctx.config.history_window_days
        since = self.ctx.now() - timedelta(days=days)
        return (
            self.db.query(TrustEventDB)
            .filter(TrustEventDB.user_id == user_id, TrustEventDB.created_at > since)
            .order_by(TrustEventDB.created_at.desc(), TrustEventDB.id.desc())
            .limit(limit)
            .all()
        )

    def windowed_summary(self, user_id: str, days: int = None) -> Dict[str, int]:
        """Event count and summed deltas inside the history window."""
        days = days if days is not None else self.ctx.config.history_window_days
        since = self.ctx.now() - timedelta(days=days)
        count, trust_total, reputation_total = (
            self.db.query(
                func.count(TrustEventDB.id),
                func.coalesce(func.sum(TrustEventDB.trust_delta), 0),
                func.coalesce(func.sum(TrustEventDB.reputation_delta), 0),
            )
            .filter(TrustEventDB.user_id == user_id, TrustEventDB.created_at > since)
            .one()
        )
        return {
            "window_days": days,
            "event_count": int(count or 0),
            "trust_delta": int(trust_total or 0),
            "reputation_delta": int(reputation_total or 0),
        }
