"""api/ -- HTTP assembly: app factory, REST routes and their transport models.

Layer rule: api/ may import from auth/, cache/, core/ and web/. Nothing
imports from api/ except asgi.py.
"""
