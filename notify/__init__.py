"""notify/ -- Outbound email delivery for Latchkey.

Layer rule: notify/ imports only stdlib + third-party libraries and auth.errors.
auth/service.py depends on the Notifier protocol defined here, never on a
concrete transport; api/main.py picks the transport at startup.
"""
