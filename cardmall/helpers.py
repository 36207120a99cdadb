import time
import re
from datetime import datetime, timezone
import hmac
from typing import Optional

from starlette.requests import Request

# sentinel for callers we cannot identify; never rate limited
UNKNOWN_CLIENT = "unknown"


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


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def client_ip(request: Request) -> str:
    # first hop of the forwarded chain, then the proxy's real-ip header
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT
