"""
Apply the results schema migrations without starting the web server.

Usage:
  python migrate.py

Runs Flask-Migrate (Alembic) upgrade against DATABASE_URL.
"""

import logging
import sys


def main():
    import school_results
    from flask_migrate import upgrade

    try:
        print("Applying database migrations...")
        with school_results.app.app_context():
            upgrade(directory='migrations')
        print("✓ Migrations completed successfully.")
    except Exception as e:
        logging.exception('Migration failed')
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
