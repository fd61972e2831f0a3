"""auth/ -- Authentication core for Latchkey.

Credential store, password hasher, session manager, reset token manager and
the AuthService orchestrator that composes them.

Layer rule: auth/ imports only stdlib + third-party libraries (plus the
Notifier protocol from notify/). It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
