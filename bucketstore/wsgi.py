"""WSGI entry point, e.g. ``gunicorn bucketstore.wsgi:app``."""

from .app import create_app

app = create_app()
