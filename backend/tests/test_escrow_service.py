"""
Tests for EscrowService.

Key tests:
1. create_escrow: risk gate, hold, duplicate guard, optional mirror
2. confirm_completion: proof check, capture, fee split, reputation credit
3. initiate_dispute / resolve_dispute: both winners, money and reputation
4. cancel_escrow: refund and terminal status
5. Port failures roll back to the prior state
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from trust_escrow.errors import (
    ExternalPortError, NotFoundError, PreconditionError, RiskBlockedError, ValidationError,
)
from trust_escrow.models.db_models import (
    TransactionDB, TransactionStatus, TrustEventDB, TrustEventType, UserDB,
)
from trust_escrow.services.escrow.escrow_service import EscrowService

SITE = {"coordinates": {"lat": 40.7128, "lng": -74.0060}, "address": "Main St"}
NEAR_SITE = {"lat": 40.7129, "lng": -74.0060}


@pytest.fixture
def service(ctx):
    return EscrowService(ctx)


@pytest.fixture
def escrow(service, parties, now):
    """An open escrow between the standard parties."""
    client, provider, listing = parties
    return service.create_escrow(
        client.id, provider.id, listing.id, "250.00",
        scheduled_time=now, location_data=SITE,
    )


def reload(db, model, row_id):
    db.expire_all()
    return db.query(model).filter(model.id == row_id).one()


class TestCreateEscrow:

    def test_low_risk_request_opens_hold(self, escrow, payment_port, db):
        assert escrow["status"] == "escrowed"
        assert escrow["amount"] == "250.00"
        assert escrow["risk_assessment"]["risk_level"] == "low"
        assert escrow["escrow_address"] is None

        hold = payment_port.holds[escrow["payment_hold_id"]]
        assert hold.amount == Decimal("250.00")
        assert hold.state == "held"

        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.status == TransactionStatus.ESCROWED
        assert txn.location_data["coordinates"]["lat"] == 40.7128

    def test_high_risk_blocked_before_hold(self, service, make_user, make_service, payment_port, db):
        client = make_user(trust_score=150, verification_tier=1, age_days=2)
        provider = make_user(trust_score=900, verification_tier=4)
        listing = make_service(provider)

        with pytest.raises(RiskBlockedError) as exc_info:
            service.create_escrow(client.id, provider.id, listing.id, "600")

        assert exc_info.value.risk_score >= 70
        assert "client_low_trust" in exc_info.value.risk_factors
        assert payment_port.calls == []
        assert db.query(TransactionDB).count() == 0

    def test_duplicate_open_escrow_rejected(self, service, parties, escrow, payment_port):
        client, provider, listing = parties

        with pytest.raises(PreconditionError):
            service.create_escrow(client.id, provider.id, listing.id, "100")

        assert payment_port.calls == ["hold"]

    def test_duplicate_caught_by_unique_index(self, service, parties, escrow, payment_port, monkeypatch, db):
        """A racing insert that passes the pre-check is rejected and its hold released."""
        client, provider, listing = parties
        monkeypatch.setattr(service, "_find_open_escrow", lambda request: None)

        with pytest.raises(PreconditionError):
            service.create_escrow(client.id, provider.id, listing.id, "100")

        assert payment_port.calls == ["hold", "hold", "refund"]
        refunded = [h for h in payment_port.holds.values() if h.state == "refunded"]
        assert len(refunded) == 1
        assert db.query(TransactionDB).count() == 1

    def test_hold_failure_creates_nothing(self, service, parties, payment_port, db):
        client, provider, listing = parties
        payment_port.fail_on.add("hold")

        with pytest.raises(ExternalPortError) as exc_info:
            service.create_escrow(client.id, provider.id, listing.id, "100")

        assert exc_info.value.operation == "hold"
        assert db.query(TransactionDB).count() == 0

    def test_mirror_reference_recorded(self, ctx, parties, db):
        client, provider, listing = parties
        ctx.mirror = MagicMock(enabled=True)
        ctx.mirror.mirror.return_value = "0xabc123"

        result = EscrowService(ctx).create_escrow(client.id, provider.id, listing.id, "100")

        assert result["escrow_address"] == "0xabc123"
        assert reload(db, TransactionDB, result["transaction_id"]).escrow_address == "0xabc123"

    def test_failing_mirror_does_not_block(self, ctx, parties, payment_port):
        client, provider, listing = parties
        ctx.mirror = MagicMock(enabled=True)
        ctx.mirror.mirror.side_effect = ConnectionError("node unreachable")

        result = EscrowService(ctx).create_escrow(client.id, provider.id, listing.id, "100")

        assert result["status"] == "escrowed"
        assert result["escrow_address"] is None
        assert payment_port.holds[result["payment_hold_id"]].state == "held"

    def test_disabled_mirror_not_called(self, ctx, parties):
        client, provider, listing = parties
        ctx.mirror = MagicMock(enabled=False)

        EscrowService(ctx).create_escrow(client.id, provider.id, listing.id, "100")

        ctx.mirror.mirror.assert_not_called()

    @pytest.mark.parametrize("amount", ["0", "-10", "abc"])
    def test_bad_amount_rejected(self, service, parties, amount):
        client, provider, listing = parties
        with pytest.raises(ValidationError):
            service.create_escrow(client.id, provider.id, listing.id, amount)

    def test_same_user_both_sides_rejected(self, service, parties):
        client, _, listing = parties
        with pytest.raises(ValidationError):
            service.create_escrow(client.id, client.id, listing.id, "100")

    def test_unknown_service(self, service, parties):
        client, provider, _ = parties
        with pytest.raises(NotFoundError):
            service.create_escrow(client.id, provider.id, "no-such-service", "100")

    def test_risk_assessed_under_listing_service_type(self, service, parties, make_service):
        """Without an explicit service_type the listing's own type is assessed."""
        client, provider, _ = parties
        moving = make_service(provider, title="Moving help", service_type="moving")

        with patch.object(
            service.risk, "assess_transaction_risk", wraps=service.risk.assess_transaction_risk
        ) as assess:
            service.create_escrow(client.id, provider.id, moving.id, "100")

        assert assess.call_args.args[3] == "moving"

    def test_explicit_service_type_wins(self, service, parties, make_service):
        client, provider, _ = parties
        moving = make_service(provider, service_type="moving")

        with patch.object(
            service.risk, "assess_transaction_risk", wraps=service.risk.assess_transaction_risk
        ) as assess:
            service.create_escrow(client.id, provider.id, moving.id, "100", service_type="delivery")

        assert assess.call_args.args[3] == "delivery"


class TestConfirmCompletion:

    def test_completion_pays_provider_minus_fee(self, service, escrow, payment_port, db, parties, now):
        client, provider, _ = parties
        proof = {"gps": NEAR_SITE, "timestamp": (now + timedelta(minutes=10)).isoformat(), "media": ["a.jpg"]}

        result = service.confirm_completion(escrow["transaction_id"], proof)

        assert result["status"] == "completed"
        assert result["validations"] == ["gps", "timing", "media"]
        assert result["payout"]["platform_fee"] == "12.50"
        assert result["payout"]["provider_amount"] == "237.50"
        assert payment_port.holds[escrow["payment_hold_id"]].state == "captured"
        assert payment_port.transfers[0]["destination"] == "acct_provider"
        assert payment_port.transfers[0]["amount"] == Decimal("237.50")

        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.completed_at == now
        assert txn.completion_proof["media"] == ["a.jpg"]
        assert reload(db, UserDB, client.id).reputation_score == 30
        assert reload(db, UserDB, provider.id).reputation_score == 30

    def test_invalid_proof_changes_nothing(self, service, escrow, payment_port, db):
        far = {"lat": 41.0, "lng": -74.0060}

        with pytest.raises(ValidationError, match="gps"):
            service.confirm_completion(escrow["transaction_id"], {"gps": far})

        assert reload(db, TransactionDB, escrow["transaction_id"]).status == TransactionStatus.ESCROWED
        assert payment_port.calls == ["hold"]

    def test_capture_failure_rolls_back(self, service, escrow, payment_port, db, parties):
        client, _, _ = parties
        payment_port.fail_on.add("capture")

        with pytest.raises(ExternalPortError):
            service.confirm_completion(escrow["transaction_id"], {"media": ["a.jpg"]})

        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.status == TransactionStatus.ESCROWED
        assert txn.completed_at is None
        assert db.query(TrustEventDB).count() == 0
        assert reload(db, UserDB, client.id).reputation_score == 20

    def test_completed_cannot_complete_again(self, service, escrow):
        service.confirm_completion(escrow["transaction_id"], {})

        with pytest.raises(PreconditionError):
            service.confirm_completion(escrow["transaction_id"], {})

    def test_payout_falls_back_to_user_id(self, service, make_user, make_service, payment_port):
        client = make_user(verification_tier=3)
        provider = make_user(verification_tier=3)
        listing = make_service(provider)
        created = service.create_escrow(client.id, provider.id, listing.id, "80")

        service.confirm_completion(created["transaction_id"], {})

        assert payment_port.transfers[0]["destination"] == provider.id

    def test_unknown_transaction(self, service):
        with pytest.raises(NotFoundError):
            service.confirm_completion("missing", {})


class TestDisputes:

    def test_client_opens_dispute(self, service, escrow, parties, db):
        client, _, _ = parties

        result = service.initiate_dispute(
            escrow["transaction_id"], {"reason": "no_show", "evidence": {"note": "waited 2h"}}, client.id
        )

        assert result["status"] == "disputed"
        assert result["dispute_id"].startswith(f"dispute_{escrow['transaction_id']}_")
        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.status == TransactionStatus.DISPUTED
        assert txn.dispute_case_id == result["dispute_id"]
        assert txn.dispute_data["status"] == "open"
        assert txn.dispute_data["initiator"] == client.id

    def test_dispute_case_id_follows_engine_clock(self, ctx, service, escrow, parties, now):
        """Local case ids are stamped from ctx.clock, so they are reproducible."""
        client, _, _ = parties
        ctx.clock = lambda: now + timedelta(minutes=5)

        result = service.initiate_dispute(escrow["transaction_id"], {"reason": "no_show"}, client.id)

        stamp = int((now + timedelta(minutes=5)).timestamp() * 1000)
        assert result["dispute_id"] == f"dispute_{escrow['transaction_id']}_{stamp}"

    def test_outsider_cannot_dispute(self, service, escrow, make_user):
        outsider = make_user()
        with pytest.raises(ValidationError):
            service.initiate_dispute(escrow["transaction_id"], {"reason": "spam"}, outsider.id)

    def test_reason_required(self, service, escrow, parties):
        client, _, _ = parties
        with pytest.raises(ValidationError):
            service.initiate_dispute(escrow["transaction_id"], {"evidence": "x"}, client.id)

    def test_completed_cannot_be_disputed(self, service, escrow, parties):
        client, _, _ = parties
        service.confirm_completion(escrow["transaction_id"], {})

        with pytest.raises(PreconditionError):
            service.initiate_dispute(escrow["transaction_id"], {"reason": "late"}, client.id)

    def test_client_wins_refunds_hold(self, service, escrow, parties, payment_port, db):
        client, provider, _ = parties
        service.initiate_dispute(escrow["transaction_id"], {"reason": "no_show"}, client.id)

        result = service.resolve_dispute(escrow["transaction_id"], {"winner": "client", "reasoning": "no proof"})

        assert result == {
            "resolution": "client",
            "transaction_id": escrow["transaction_id"],
            "status": "resolved",
            "payout": None,
        }
        assert payment_port.holds[escrow["payment_hold_id"]].state == "refunded"
        assert payment_port.transfers == []
        assert reload(db, UserDB, client.id).reputation_score == 25
        assert reload(db, UserDB, provider.id).reputation_score == 5

        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.dispute_data["status"] == "resolved"
        assert txn.dispute_data["resolution"]["winner"] == "client"
        assert txn.completion_proof == {"gps": None, "timestamp": None, "media": None}

    def test_provider_wins_pays_out(self, service, escrow, parties, payment_port, db):
        client, provider, _ = parties
        service.initiate_dispute(escrow["transaction_id"], {"reason": "quality"}, client.id)

        result = service.resolve_dispute(
            escrow["transaction_id"], {"winner": "provider", "evidence": {"media": ["after.jpg"]}}
        )

        assert result["payout"]["provider_amount"] == "237.50"
        assert payment_port.holds[escrow["payment_hold_id"]].state == "captured"
        assert reload(db, UserDB, client.id).reputation_score == 10
        assert reload(db, UserDB, provider.id).reputation_score == 25
        assert reload(db, TransactionDB, escrow["transaction_id"]).completion_proof["media"] == ["after.jpg"]

        outcomes = db.query(TrustEventDB).filter(TrustEventDB.event_type == TrustEventType.DISPUTE_OUTCOME).count()
        assert outcomes == 2

    def test_disputed_cannot_complete(self, service, escrow, parties):
        client, _, _ = parties
        service.initiate_dispute(escrow["transaction_id"], {"reason": "no_show"}, client.id)

        with pytest.raises(PreconditionError):
            service.confirm_completion(escrow["transaction_id"], {})

    def test_losing_client_reputation_floors_at_zero(self, service, make_user, make_service, db):
        client = make_user(verification_tier=3, reputation_score=4)
        provider = make_user(verification_tier=3)
        listing = make_service(provider)
        created = service.create_escrow(client.id, provider.id, listing.id, "60")
        service.initiate_dispute(created["transaction_id"], {"reason": "late"}, client.id)

        service.resolve_dispute(created["transaction_id"], {"winner": "provider"})

        assert reload(db, UserDB, client.id).reputation_score == 0
        assert reload(db, UserDB, provider.id).reputation_score == 5

    def test_resolve_requires_disputed(self, service, escrow):
        with pytest.raises(PreconditionError):
            service.resolve_dispute(escrow["transaction_id"], {"winner": "client"})

    def test_invalid_winner(self, service, escrow, parties):
        client, _, _ = parties
        service.initiate_dispute(escrow["transaction_id"], {"reason": "no_show"}, client.id)

        with pytest.raises(ValidationError):
            service.resolve_dispute(escrow["transaction_id"], {"winner": "platform"})

    def test_refund_failure_keeps_dispute_open(self, service, escrow, parties, payment_port, db):
        client, _, _ = parties
        service.initiate_dispute(escrow["transaction_id"], {"reason": "no_show"}, client.id)
        payment_port.fail_on.add("refund")

        with pytest.raises(ExternalPortError):
            service.resolve_dispute(escrow["transaction_id"], {"winner": "client"})

        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.status == TransactionStatus.DISPUTED
        assert reload(db, UserDB, client.id).reputation_score == 20


class TestCancel:

    def test_cancel_refunds_and_is_terminal(self, service, escrow, payment_port, db, now):
        result = service.cancel_escrow(escrow["transaction_id"], "client changed plans")

        assert result["status"] == "cancelled"
        assert payment_port.holds[escrow["payment_hold_id"]].state == "refunded"
        txn = reload(db, TransactionDB, escrow["transaction_id"])
        assert txn.cancelled_at == now
        assert txn.cancellation_reason == "client changed plans"

        with pytest.raises(PreconditionError):
            service.cancel_escrow(escrow["transaction_id"], "again")

    def test_reason_required(self, service, escrow):
        with pytest.raises(ValidationError):
            service.cancel_escrow(escrow["transaction_id"], "")

    def test_triplet_reusable_after_cancel(self, service, escrow, parties):
        client, provider, listing = parties
        service.cancel_escrow(escrow["transaction_id"], "rescheduled")

        again = service.create_escrow(client.id, provider.id, listing.id, "250.00")

        assert again["status"] == "escrowed"


class TestStatus:

    def test_projection(self, service, escrow, parties, now):
        status = service.get_escrow_status(escrow["transaction_id"])

        assert status["status"] == "escrowed"
        assert status["client"] == "client"
        assert status["provider"] == "provider"
        assert status["service"] == "Home cleaning"
        assert status["amount"] == "250.00"
        assert status["scheduled_time"] == now.isoformat()
        assert status["terminal"] is False

    def test_unknown_transaction(self, service):
        with pytest.raises(NotFoundError):
            service.get_escrow_status("missing")

    def test_health(self, service):
        assert service.is_healthy() == {"payment_port": True, "mirror": False}
