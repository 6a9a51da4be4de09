"""
Migration: Ledger constraints and exactly-once settlement

This migration adds:
1. Non-negative check constraints on credit balances and monthly usage
2. processed_webhook_events table keyed by Stripe event id
3. page_usage table for conversion accounting

Run manually:
    python migrations/001_billing_ledger.py [downgrade]

New databases get all of this from db.create_all(); this is for databases
created before the ledger constraints existed.
"""

# SQL for PostgreSQL
UPGRADE_SQL = """
DO $$
BEGIN
    -- Clamp any legacy negative values before adding the constraints
    UPDATE credit_balances SET balance = 0 WHERE balance < 0;
    UPDATE subscriptions SET pages_used_this_month = 0 WHERE pages_used_this_month < 0;

    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname='ck_credit_balances_non_negative') THEN
        ALTER TABLE credit_balances ADD CONSTRAINT ck_credit_balances_non_negative CHECK (balance >= 0);
    END IF;
    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname='ck_subscriptions_usage_non_negative') THEN
        ALTER TABLE subscriptions ADD CONSTRAINT ck_subscriptions_usage_non_negative CHECK (pages_used_this_month >= 0);
    END IF;
END $$;

CREATE TABLE IF NOT EXISTS processed_webhook_events (
    event_id VARCHAR(255) PRIMARY KEY,
    event_type VARCHAR(100) NOT NULL,
    user_id VARCHAR(128),
    processed_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS ix_processed_webhook_events_user_id ON processed_webhook_events(user_id);

CREATE TABLE IF NOT EXISTS page_usage (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(128) NOT NULL,
    page_count INTEGER NOT NULL,
    source VARCHAR(20) NOT NULL,
    tier_id VARCHAR(50),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS ix_page_usage_user_id ON page_usage(user_id);
CREATE INDEX IF NOT EXISTS ix_subscriptions_stripe_subscription_id ON subscriptions(stripe_subscription_id);
"""

DOWNGRADE_SQL = """
DROP TABLE IF EXISTS page_usage;
DROP TABLE IF EXISTS processed_webhook_events;

ALTER TABLE credit_balances DROP CONSTRAINT IF EXISTS ck_credit_balances_non_negative;
ALTER TABLE subscriptions DROP CONSTRAINT IF EXISTS ck_subscriptions_usage_non_negative;
"""


def upgrade():
    """Run upgrade migration"""
    from pdf2md import db
    from sqlalchemy import text
    db.session.execute(text(UPGRADE_SQL))
    db.session.commit()


def downgrade():
    """Run downgrade migration"""
    from pdf2md import db
    from sqlalchemy import text
    db.session.execute(text(DOWNGRADE_SQL))
    db.session.commit()


if __name__ == "__main__":
    import os
    import sys
    sys.path.insert(0, '.')
    from pdf2md import create_app

    app = create_app(os.getenv('FLASK_ENV', 'production'))
    with app.app_context():
        if len(sys.argv) > 1 and sys.argv[1] == 'downgrade':
            print("Running downgrade...")
            downgrade()
            print("Downgrade complete")
        else:
            print("Running upgrade...")
            upgrade()
            print("Upgrade complete")
