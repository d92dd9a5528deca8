"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py

This script uses Flask-Migrate (Alembic) to apply schema migrations.
"""

import sys


def main():
    import exam_results
    from flask_migrate import upgrade

    try:
        print("Applying database migrations...")
        # Upgrade within app context so Flask-Migrate can find the migrate object
        with exam_results.app.app_context():
            upgrade(directory='migrations')
        print("Migrations completed successfully.")
    except Exception as e:
        print(f"Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
