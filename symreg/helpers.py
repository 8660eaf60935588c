import time
import re
import hmac
import hashlib
from datetime import datetime, timezone
from typing import Iterable, List, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def unique_emails(emails: Iterable[Optional[str]]) -> List[str]:
    # order-preserving, lower-cased, blanks dropped
    seen = {}
    for e in emails:
        e = normalize_email(e)
        if e:
            seen.setdefault(e, None)
    return list(seen)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def minor_to_major(amount: int) -> float:
    return amount / 100
