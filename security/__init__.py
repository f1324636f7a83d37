"""security/ -- Login lockout, rate limiting, session pinning and risk scoring.

Layer rule: security/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, auth/, audit/, or cache/. The audit sink is
injected through the AuditSink protocol in security/engine.py.
"""
