#!/usr/bin/env python3
"""
Demo User Seed Script
Creates a user with a starting trust profile and records the registration
on the trust ledger.

Usage:
    python -m scripts.seed_demo_users <username> [verification_tier] [payout_account]

Example:
    python -m scripts.seed_demo_users jane_provider 3 acct_jane
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trust_escrow.config import configure_logging, get_settings
from trust_escrow.context import EngineContext
from trust_escrow.database import init_db, make_engine, make_session_factory
from trust_escrow.errors import TrustEscrowError
from trust_escrow.models.db_models import UserDB
from trust_escrow.services.trust import ReputationService, TrustScoreCalculator


def create_demo_user(username: str, verification_tier: int = 1, payout_account: str = None) -> bool:
    """Create a user, log the registration and compute an initial trust score."""
    engine = make_engine(get_settings().database_url)
    # Ensure tables exist
    init_db(engine)

    db = make_session_factory(engine)()
    try:
        existing = db.query(UserDB).filter(UserDB.username == username).first()
        if existing:
            print(f"Error: Username '{username}' already exists.")
            return False

        user = UserDB(
            id=str(uuid4()),
            username=username,
            verification_tier=verification_tier,
            payout_account=payout_account,
        )
        db.add(user)
        db.commit()

        ctx = EngineContext(db=db)
        ReputationService(ctx).record_registration(user.id, source="seed_script")
        result = TrustScoreCalculator(ctx).calculate_trust_score(user.id)

        print(f"User created successfully!")
        print(f"  Username: {username}")
        print(f"  Tier: {verification_tier}")
        print(f"  Trust score: {result.score} ({result.tier})")
        return True

    except TrustEscrowError as e:
        print(f"Error creating user: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (2, 3, 4):
        print(__doc__)
        sys.exit(1)

    configure_logging()
    username = sys.argv[1]

    try:
        tier = int(sys.argv[2]) if len(sys.argv) > 2 else 1
    except ValueError:
        print("Error: verification_tier must be an integer.")
        sys.exit(1)

    if not 1 <= tier <= 4:
        print("Error: verification_tier must be between 1 and 4.")
        sys.exit(1)

    payout_account = sys.argv[3] if len(sys.argv) > 3 else None

    success = create_demo_user(username, tier, payout_account)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
