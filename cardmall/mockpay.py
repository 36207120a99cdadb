from abc import ABC, abstractmethod
from typing import Optional, Tuple
from fastapi import HTTPException
import time
import uuid
import hmac
import hashlib
import base64
import json

from .config import MOCK_SECRET


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    # URL the buyer is sent to; None when payments are not configured
    @abstractmethod
    def payment_url(
            self, order_no: str, amount: int, subject: str
    ) -> Optional[str]: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (order_no, paid amount in cents or None, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[int], Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    SIGNATURE_HEADER = "x-mockpay-signature"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    def payment_url(
            self, order_no: str, amount: int, subject: str
    ) -> Optional[str]:
        return f"/mockpay/{order_no}"

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, kind: str, order_no: str, amount: int) -> bytes:
        return json.dumps({
            "type": f"payment.{kind}",
            "order_no": order_no,
            "amount": amount,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }).encode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(self.SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected.encode(), sig.encode()):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return str(event.get("type", "")).split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[int], Optional[str]]:
        amount = event.get("amount")
        return (
                str(event.get("order_no") or ""),
                int(amount) if amount is not None else None,
                event.get("idempotency_key"),
        )
