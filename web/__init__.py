"""web/ -- Server-rendered pages for browser-facing auth flows.

Layer rule: web/ imports only stdlib + third-party libraries.
"""
