"""
Common utilities for sekai-mirror.

Modules:
- crypt: AES-CBC payload encryption and asset-bundle deobfuscation
- rate_limiter: Thread-safe token-bucket rate limiter
- sekai: Game API client (encrypted msgpack protocol, session handling)
- notifier: Change-event publisher (SNS)
"""

__all__ = [
    "crypt",
    "notifier",
    "rate_limiter",
    "sekai",
]
