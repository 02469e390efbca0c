"""
asgi.py -- ASGI entry point.

Builds the application from the environment (.env supported, see
core/config.py). Importing this module reads Settings and opens the store.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
