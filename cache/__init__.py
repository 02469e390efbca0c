"""cache/ -- Short-lived state cache shared by the OAuth providers.

Layer rule: cache/ imports only stdlib + third-party libraries.
It does NOT import from api/, web/, auth/, or core/.
"""
