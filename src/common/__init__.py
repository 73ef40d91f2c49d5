"""
Common utilities for the single-secret authenticator.

Modules:
- totp: time-based one-time code derivation (HMAC-SHA1, 30 s step, 6 digits)
"""

__all__ = [
    "totp",
]
