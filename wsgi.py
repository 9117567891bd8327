"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db migrate -m "description"
    flask db upgrade
    flask recompute-requirements
"""

from reqtrack import create_app

app = create_app()
