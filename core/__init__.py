"""core/ -- Settings shared by every layer.

Layer rule: core/ imports only stdlib + third-party libraries.
"""
