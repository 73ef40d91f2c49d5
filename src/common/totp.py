from __future__ import annotations

import hashlib
import hmac
import math
import struct
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union


Instant = Union[datetime, int, float]


@dataclass(frozen=True)
class TokenConfig:
    """Fixed code parameters: HMAC-SHA1, 30 s step, 6 digits, no tolerance window."""

    digest: Callable = hashlib.sha1
    time_step: int = 30
    digits: int = 6


DEFAULT_CONFIG = TokenConfig()


def _unix_seconds(at: Instant) -> int:
    if isinstance(at, datetime):
        if at.tzinfo is None:
            raise ValueError("datetime must be timezone-aware")
        return math.floor(at.timestamp())
    return math.floor(at)


def time_counter(unix_seconds: Instant, *, time_step: int = DEFAULT_CONFIG.time_step) -> int:
    """Return the step counter floor(t / time_step) for the given instant."""
    t = _unix_seconds(unix_seconds)
    if t < 0:
        raise ValueError("time must not be before the Unix epoch")
    return t // time_step


def seconds_remaining(unix_seconds: Instant, *, time_step: int = DEFAULT_CONFIG.time_step) -> int:
    """Seconds until the current step ends (1..time_step)."""
    t = _unix_seconds(unix_seconds)
    return time_step - (t % time_step)


def dynamic_truncate(mac: bytes) -> int:
    """
    RFC 4226 dynamic truncation.

    The low nibble of the last byte selects a 4-byte window; the top bit of
    that window is cleared so the result is a non-negative 31-bit integer.
    """
    offset = mac[-1] & 0x0F
    return struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF


def derive_code(
    secret: bytes,
    at: Optional[Instant] = None,
    *,
    clock: Callable[[], float] = time.time,
    config: TokenConfig = DEFAULT_CONFIG,
) -> str:
    """
    Derive the time-based one-time code for `secret` at instant `at`.

    - `at` may be an aware datetime or Unix seconds; when None the clock is read once.
    - Identical secret and identical step always yield the identical code.
    - Returns exactly `config.digits` decimal characters, leading zeros kept.

    Raises ValueError for an empty secret or an instant before the epoch.
    """
    if not secret:
        raise ValueError("secret must be non-empty")
    if at is None:
        at = clock()

    counter = time_counter(at, time_step=config.time_step)
    mac = hmac.new(secret, struct.pack(">Q", counter), config.digest).digest()
    code = dynamic_truncate(mac) % (10 ** config.digits)
    return str(code).zfill(config.digits)
