"""
Success access token: lets the buyer open the success view for one order for
15 minutes without the lookup password.

    token = "<expiry_ms>.<base64url(HMAC-SHA256(secret, order_no + "\\n" + expiry_ms))>"

Nothing is stored; the token is a pure function of (order_no, secret, expiry).
"""
from __future__ import annotations
import base64
import hashlib
import hmac
import os
import time
from typing import Optional

TOKEN_TTL_MS = 15 * 60 * 1000
MIN_SECRET_LEN = 16


def get_secret() -> Optional[str]:
    secret = (
        os.environ.get("ORDER_SUCCESS_TOKEN_SECRET")
        or os.environ.get("SESSION_SECRET")
    )
    if not secret or len(secret) < MIN_SECRET_LEN:
        return None
    return secret


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _sign(secret: str, order_no: str, expiry: str) -> bytes:
    payload = f"{order_no}\n{expiry}".encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).digest()


def mint(order_no: str, secret: Optional[str] = None,
         now_ms: Optional[int] = None) -> Optional[str]:
    """Returns None when no signing secret is configured."""
    secret = secret or get_secret()
    if not secret:
        return None
    now_ms = _now_ms() if now_ms is None else now_ms
    expiry = str(now_ms + TOKEN_TTL_MS)
    return f"{expiry}.{_b64url_encode(_sign(secret, order_no, expiry))}"


def verify(order_no: str, token: Optional[str], secret: Optional[str] = None,
           now_ms: Optional[int] = None) -> bool:
    secret = secret or get_secret()
    if not secret or not isinstance(token, str):
        return False
    parts = token.split(".")
    if len(parts) != 2:
        return False
    expiry, sig = parts
    if not expiry.isascii() or not expiry.isdigit() or not sig:
        return False
    now_ms = _now_ms() if now_ms is None else now_ms
    if now_ms > int(expiry):
        return False
    # only the canonical unpadded encoding is accepted
    expected = _b64url_encode(_sign(secret, order_no, expiry))
    return hmac.compare_digest(expected.encode(), sig.encode())
