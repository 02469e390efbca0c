"""auth/ -- Authentication and authorization package.

Providers (basic, oauth + github/discord), the session cookie, the password
KDFs, the user stores and the middleware that composes them.

Layer rule: auth/ does NOT import from api/, web/, or cache/. From core/ only the
settings are read (passwords.py, for the argon2id parameters).
api/ imports from auth/, not the other way around.
"""
