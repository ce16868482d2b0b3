"""
Apply the result engine schema without starting the web server.

Usage:
  python migrate.py

This script uses Flask-Migrate (Alembic) to apply schema migrations to the
database named by DATABASE_URL.
"""

import os
import sys


def main():
    if not os.environ.get('DATABASE_URL', '').strip():
        from dotenv import load_dotenv
        load_dotenv()
    if not os.environ.get('DATABASE_URL', '').strip():
        print("✗ DATABASE_URL is not set.", file=sys.stderr)
        sys.exit(1)

    from flask_migrate import upgrade
    from result_engine.app import app

    try:
        print("Applying database migrations...")
        with app.app_context():
            upgrade(directory='migrations')
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
