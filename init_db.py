"""
Initialize database tables.
Run this on first deploy instead of flask db upgrade.

Set RESET_DB=1 environment variable to drop and recreate all tables.
"""
import importlib.util
import os
import sys

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy import inspect

from pdf2md import create_app, db

MIGRATION_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations', '001_billing_ledger.py')


def load_migration(path=MIGRATION_PATH):
    spec = importlib.util.spec_from_file_location("migration", path)
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)
    return migration


def init_db():
    """Create all database tables."""
    app = create_app(os.getenv('FLASK_ENV', 'production'))

    with app.app_context():
        # create_app already honours RESET_DB; this covers a partially created schema
        print("Creating database tables...")
        db.create_all()
        print("Database tables created.")

        if db.engine.dialect.name != 'postgresql':
            print("Not PostgreSQL, skipping constraint migration")
            return

        # Databases created before the ledger constraints existed
        constraints = {c['name'] for c in inspect(db.engine).get_check_constraints('credit_balances')}
        if 'ck_credit_balances_non_negative' in constraints:
            print("Migration already applied (ledger constraints exist)")
            return

        print("Running billing ledger migration...")
        load_migration().upgrade()
        print("Migration complete!")


if __name__ == '__main__':
    init_db()
