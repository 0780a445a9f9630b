"""
Impersonation windows: rate limiting, window lifecycle and the per-session action audit trail.
"""
