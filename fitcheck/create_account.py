"""Create the schema and open a credit account from the command line."""
import os

import psycopg2
from dotenv import load_dotenv

from fitcheck.app.ledger.models import LedgerEntry, LedgerReason, PlanTier
from fitcheck.app.ledger.schema import SCHEMA_STATEMENTS
from fitcheck.app.plans.catalog import PLAN_CATALOG

load_dotenv()

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "fitcheck"),
    user=os.getenv("DB_USER", "fitcheck"),
    password=os.getenv("DB_PASSWORD", "fitcheck"),
)


def create_account(cur, account_id: str, tier: PlanTier) -> bool:
    cur.execute(
        "INSERT INTO accounts (account_id, plan_tier) VALUES (%s, %s) ON CONFLICT (account_id) DO NOTHING",
        (account_id, tier.value),
    )
    if cur.rowcount == 0:
        return False

    grant = PLAN_CATALOG[tier].period_grant
    if grant > 0:
        entry = LedgerEntry(
            account_id=account_id,
            delta=grant,
            reason=LedgerReason.SUBSCRIPTION_GRANT,
            reference="signup",
        )
        cur.execute(
            """
            INSERT INTO ledger_entries (entry_id, account_id, delta, reason, reference, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (entry.entry_id, account_id, entry.delta, entry.reason.value, entry.reference, entry.created_at),
        )
        cur.execute(
            "UPDATE accounts SET credit_balance = credit_balance + %s WHERE account_id = %s",
            (grant, account_id),
        )
    return True


def main():
    account_id = input("Account id: ").strip()
    tier_raw = input("Plan tier [free]: ").strip().lower() or PlanTier.FREE.value
    tier = PlanTier(tier_raw)

    with psycopg2.connect(**DB_CFG) as conn, conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        created = create_account(cur, account_id, tier)
        conn.commit()
    if created:
        print(f"Done. Account {account_id} opened on the {tier.value} plan.")
    else:
        print("Done. (If the account existed already, it was unchanged.)")


if __name__ == "__main__":
    main()
