#!/usr/bin/env python3
"""
Create the paydesk tables and default feature flags.
Usage: python scripts/init_db.py [demo_user_id]

With a user id, also seeds five demo transactions for that user.
"""

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from paydesk.database import Base, SessionLocal, engine
from paydesk.models import Transaction
from paydesk.services.feature_flags import seed_feature_flags

DEMO_TRANSACTIONS = [
    ("TXN1001", Decimal("500"), "failed", 3),
    ("TXN1002", Decimal("1200"), "success", 10),
    ("TXN1003", Decimal("300"), "pending", 1),
    ("TXN1004", Decimal("750"), "success", 5),
    ("TXN1005", Decimal("200"), "failed", 2),
]


def seed_demo_transactions(db, user_id: str) -> int:
    if db.query(Transaction).filter(Transaction.user_id == user_id).count():
        return 0
    now = datetime.now(timezone.utc)
    for txn_id, amount, status, days_ago in DEMO_TRANSACTIONS:
        db.add(
            Transaction(
                transaction_id=txn_id,
                user_id=user_id,
                amount=amount,
                status=status,
                user_email=f"{user_id}@test.com",
                created_at=now - timedelta(days=days_ago),
            )
        )
    db.commit()
    return len(DEMO_TRANSACTIONS)


def main():
    Base.metadata.create_all(bind=engine)
    print("Tables created")

    db = SessionLocal()
    try:
        seed_feature_flags(db)
        if len(sys.argv) > 1:
            count = seed_demo_transactions(db, sys.argv[1])
            print(f"{count} demo transactions seeded for {sys.argv[1]}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
