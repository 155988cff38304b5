"""
WSGI / Flask-Migrate entry point for the plan engine.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-plan-item-types
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
