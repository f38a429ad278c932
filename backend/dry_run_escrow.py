"""
Trust & Escrow Engine - Dry-Run Lifecycle Script

Exercises the engine end to end against a throwaway database to show:
1. Risk assessment gates escrow creation
2. A hold is placed and completion captures and pays out
3. A dispute halts transfers and resolution applies reputation
4. Trust scores recalculate from the resulting history

Run with: python dry_run_escrow.py
Set DRY_RUN_DATABASE_URL to point at a real database instead of SQLite memory.
"""
import logging
import os
import sys
from datetime import timedelta
from uuid import uuid4

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from trust_escrow.config import configure_logging, load_config
from trust_escrow.context import EngineContext
from trust_escrow.database import init_db, make_engine, make_session_factory
from trust_escrow.engine import TrustEscrowEngine
from trust_escrow.errors import RiskBlockedError
from trust_escrow.models.db_models import ServiceDB, UserDB, utcnow
from trust_escrow.ports import InMemoryPaymentPort

logger = logging.getLogger("dry_run_escrow")

DATABASE_URL = os.getenv("DRY_RUN_DATABASE_URL", "sqlite:///:memory:")


def print_header(step: int, title: str):
    """Print a formatted step header."""
    print(f"\n{'='*70}")
    print(f"STEP {step}: {title}")
    print('='*70)


def print_success(msg: str):
    print(f"  [OK] {msg}")


def print_fail(msg: str):
    print(f"  [FAIL] {msg}")


def print_info(msg: str):
    print(f"  [INFO] {msg}")


def seed_users(db):
    now = utcnow()
    users = {}
    for username, trust, tier, age_days in (
        ("alice_client", 520, 3, 400),
        ("bob_provider", 640, 3, 700),
        ("mallory_new", 120, 1, 2),
    ):
        user = UserDB(
            id=str(uuid4()),
            username=username,
            trust_score=trust,
            reputation_score=20,
            verification_tier=tier,
            payout_account=f"acct_{username}",
            created_at=now - timedelta(days=age_days),
            last_active=now - timedelta(days=1),
        )
        db.add(user)
        users[username] = user

    service = ServiceDB(
        id=str(uuid4()),
        provider_id=users["bob_provider"].id,
        title="Deep clean, two bedrooms",
        service_type="service_booking",
    )
    db.add(service)
    db.commit()
    return users, service


# =============================================================================
# STEPS
# =============================================================================

def step1_risk_gate(engine, users, service):
    print_header(1, "RISK GATE")

    try:
        engine.create_escrow({
            "client_id": users["mallory_new"].id,
            "provider_id": users["bob_provider"].id,
            "service_id": service.id,
            "amount": "800.00",
        })
        print_fail("High-risk booking was not blocked")
        return False
    except RiskBlockedError as e:
        print_success(f"Blocked with score {e.risk_score}: {e.risk_factors}")
        return True


def step2_complete(engine, users, service, port):
    print_header(2, "ESCROW AND COMPLETE")

    created = engine.create_escrow({
        "client_id": users["alice_client"].id,
        "provider_id": users["bob_provider"].id,
        "service_id": service.id,
        "amount": "150.00",
    })
    print_info(f"Escrow {created['transaction_id']} hold {created['payment_hold_id']}")

    completed = engine.confirm_completion(created["transaction_id"], {"media": ["after.jpg"]})
    payout = completed["payout"]
    print_info(f"Fee {payout['platform_fee']}, provider {payout['provider_amount']} -> {payout['destination']}")

    if port.holds[created["payment_hold_id"]].state != "captured":
        print_fail("Hold was not captured")
        return False
    print_success("Funds captured and paid out")
    return True


def step3_dispute(engine, users, service, port):
    print_header(3, "DISPUTE AND RESOLVE")

    created = engine.create_escrow({
        "client_id": users["alice_client"].id,
        "provider_id": users["bob_provider"].id,
        "service_id": service.id,
        "amount": "90.00",
    })
    dispute = engine.initiate_dispute(
        created["transaction_id"], {"reason": "no_show"}, users["alice_client"].id
    )
    print_info(f"Dispute {dispute['dispute_id']} opened")

    resolution = engine.resolve_dispute(created["transaction_id"], {"winner": "client", "reasoning": "no proof"})
    print_info(f"Resolved for {resolution['resolution']}")

    if port.holds[created["payment_hold_id"]].state != "refunded":
        print_fail("Hold was not refunded")
        return False
    print_success("Client refunded, reputation updated")
    return True


def step4_scores(engine, users):
    print_header(4, "RECALCULATE TRUST")

    for username in ("alice_client", "bob_provider"):
        result = engine.calculate_trust_score(users[username].id)
        print_info(f"{username}: {result['score']} ({result['tier']}) history={result['history']}")
    print_success("Scores recalculated")
    return True


def main():
    configure_logging()
    print("\n" + "="*70)
    print("TRUST & ESCROW ENGINE - DRY RUN")
    print("="*70)

    db_engine = make_engine(DATABASE_URL)
    init_db(db_engine)
    db = make_session_factory(db_engine)()
    port = InMemoryPaymentPort()
    engine = TrustEscrowEngine(EngineContext(db=db, payment_port=port, config=load_config()))

    try:
        users, service = seed_users(db)
        ok = (
            step1_risk_gate(engine, users, service)
            and step2_complete(engine, users, service, port)
            and step3_dispute(engine, users, service, port)
            and step4_scores(engine, users)
        )

        print("\n" + "="*70)
        print("DRY-RUN COMPLETE" if ok else "DRY-RUN FAILED")
        print("="*70)
        print(f"  Payment port calls: {port.calls}")
        return ok

    except Exception as e:
        logger.exception(f"Dry-run failed: {e}")
        db.rollback()
        return False

    finally:
        db.close()


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
