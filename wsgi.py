"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi seed-workflow-template
    flask --app wsgi run-alert-sweep --project-id 42
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from buildtrack import create_app

app = create_app()
