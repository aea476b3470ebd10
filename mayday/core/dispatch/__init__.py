"""
Enforcement dispatch: creation, fan-out, police notification,
acknowledge/resolve and the expiry sweep.
"""
