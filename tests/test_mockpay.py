import json

import pytest
from fastapi import HTTPException

from cardmall.mockpay import MockPay

PAYLOAD = b'{"type": "payment.succeeded", "order_no": "FAK2024021300001"}'


@pytest.fixture
def pay():
    return MockPay(secret="mockpay-test-secret")


class TestVerifyWebhook:
    def test_accepts_own_signature(self, pay):
        event = pay.verify_webhook(
            PAYLOAD, {MockPay.SIGNATURE_HEADER: pay.sign(PAYLOAD)}
        )
        assert event["order_no"] == "FAK2024021300001"

    @pytest.mark.parametrize("sig", [None, "", "bm90LWEtc2ln", "é", "签名"])
    def test_rejects_bad_signature(self, pay, sig):
        headers = {} if sig is None else {MockPay.SIGNATURE_HEADER: sig}
        with pytest.raises(HTTPException) as exc:
            pay.verify_webhook(PAYLOAD, headers)
        assert exc.value.status_code == 400

    def test_signature_for_other_payload(self, pay):
        with pytest.raises(HTTPException):
            pay.verify_webhook(PAYLOAD + b" ", {
                MockPay.SIGNATURE_HEADER: pay.sign(PAYLOAD),
            })

    def test_signed_garbage_is_rejected(self, pay):
        body = b"\xff\xfe not json"
        with pytest.raises(HTTPException) as exc:
            pay.verify_webhook(body, {MockPay.SIGNATURE_HEADER: pay.sign(body)})
        assert exc.value.detail == "Invalid JSON"


class TestEvents:
    def test_build_event_round_trips(self, pay):
        raw = pay.build_event("canceled", "FAK2024021300001", 500)
        event = pay.verify_webhook(raw, {MockPay.SIGNATURE_HEADER: pay.sign(raw)})
        assert pay.event_kind(event) == "canceled"
        order_no, amount, key = pay.event_ids(event)
        assert (order_no, amount) == ("FAK2024021300001", 500)
        assert key.startswith("evt_")

    def test_missing_amount(self, pay):
        event = json.loads(PAYLOAD)
        assert pay.event_ids(event) == ("FAK2024021300001", None, None)
