from __future__ import annotations

import hashlib
from datetime import datetime, timezone


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data, usedforsecurity=False).hexdigest()


def colon_hex(hex_digits: str) -> str:
    """
    Group a hex string in uppercase pairs joined by ':'.
    """
    hex_digits = hex_digits.upper()
    return ":".join(hex_digits[i:i + 2] for i in range(0, len(hex_digits), 2))


def format_serial(serial: int) -> str:
    """
    Serial as colon-delimited uppercase hex of the magnitude bytes, with a
    leading '-' for negative serials.
    """
    magnitude = abs(serial)
    raw = magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "big")
    text = colon_hex(raw.hex())
    return f"-{text}" if serial < 0 else text


def utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def dt_to_utc_iso(dt: datetime) -> str:
    return utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def format_timestamp(dt: datetime) -> str:
    return utc(dt).strftime("%Y-%m-%d %H:%M:%S +0000 UTC")


def format_time_remaining(expires: datetime, now: datetime) -> str:
    """
    `<d>d <h>h remaining` or `<d>d <h>h ago`. Both parts are truncated and
    the day part is omitted when zero.
    """
    hours = (utc(expires) - utc(now)).total_seconds() / 3600
    expired = hours < 0
    hours = abs(hours)
    days = int(hours // 24)
    rest = int(hours - days * 24)
    text = f"{days}d {rest}h" if days > 0 else f"{rest}h"
    return f"{text} {'ago' if expired else 'remaining'}"


def expires_in_days(expires: datetime, now: datetime) -> int:
    return int((utc(expires) - utc(now)).total_seconds() // 86400)


def life_remaining_percent(not_before: datetime, not_after: datetime, now: datetime) -> int:
    lifespan = (utc(not_after) - utc(not_before)).total_seconds()
    remaining = (utc(not_after) - utc(now)).total_seconds()
    if remaining <= 0 or lifespan <= 0:
        return 0
    return min(100, int(remaining / lifespan * 100))


def format_elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{int(minutes)}m{secs:.3f}s"
    return f"{secs:.3f}s"
