from datetime import datetime, timezone, timedelta
from typing import Optional
import re
import uuid

NON_DIGITS_RE = re.compile(r"\D")
LEADING_ZEROS_RE = re.compile(r"^0+")


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z' (fixed width, sorts as text)."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(s: str) -> datetime:
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return to_iso(utcnow())


def due_at_from(now: datetime, delay_minutes: int) -> str:
    """`now` shifted by a non-negative number of minutes, as ISO text."""
    try:
        return to_iso(now + timedelta(milliseconds=max(0, delay_minutes) * 60000))
    except OverflowError:
        raise ValueError(f"delay_minutes out of range: {delay_minutes}")


def to_canonical_recipient(raw, country_code: str = "55") -> str:
    """
    Normalize a phone number to E.164.
    Values already starting with '+' are kept as given; otherwise digits are
    kept, leading zeros dropped and the country code prepended.
    Returns '' when no digits remain.
    """
    value = str(raw or "").strip()
    if value.startswith("+"):
        return value
    digits = NON_DIGITS_RE.sub("", value)
    if not digits:
        return ""
    return f"+{country_code}{LEADING_ZEROS_RE.sub('', digits)}"


def new_batch_id(now: Optional[datetime] = None) -> str:
    """Time-derived grouping key, e.g. 'b1731490354123-3f9a1c'."""
    ms = int((now or utcnow()).timestamp() * 1000)
    return f"b{ms}-{uuid.uuid4().hex[:6]}"

