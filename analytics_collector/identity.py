"""
Visitor identity hashing.

A visitor id is a SHA-256 digest over (ip, user agent, site, daily salt).
The salt rotates every UTC day, so the same browser maps to the same id
for one day only and the digest cannot be walked back to the IP once the
salt is gone.
"""

import hashlib
import hmac
from datetime import date, datetime, timezone
from typing import Optional

FIELD_DELIMITER = "|"


def _encode_field(value: Optional[str]) -> str:
    # Length prefix keeps "a|b" + "c" distinct from "a" + "b|c".
    text = value if value else "unknown"
    return f"{len(text)}:{text}"


def derive_visitor_id(ip: Optional[str], user_agent: Optional[str], site_id: str, salt: str) -> str:
    """Return the 64-character hex visitor id for one request."""
    joined = FIELD_DELIMITER.join(
        _encode_field(part) for part in (ip, user_agent, site_id, salt)
    )
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def get_daily_salt(day: Optional[date] = None, secret: str = "analytics") -> str:
    """
    Salt for a calendar day (UTC).

    Deterministic within the day and different across days. Keyed with a
    server-side secret so a salt for a past day cannot be recomputed from
    the date alone.
    """
    if day is None:
        day = datetime.now(timezone.utc).date()
    elif isinstance(day, datetime):
        day = day.astimezone(timezone.utc).date()

    digest = hmac.new(secret.encode("utf-8"), day.isoformat().encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def derive_session_id(visitor_id: str) -> str:
    """Fallback session id for beacons that carry no `sid`."""
    return f"v-{visitor_id[:16]}"
