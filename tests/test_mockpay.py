import json

import pytest
from fastapi import HTTPException

from ticketgate.mockpay import (
    KIND_CANCELED, KIND_FAILED, KIND_REFUNDED, KIND_SUCCEEDED,
)


async def test_create_transaction_is_idempotent_per_key(mockpay):
    first = await mockpay.create_transaction(1200, "usd", {"a": "b"}, "ord_1")
    again = await mockpay.create_transaction(1200, "usd", {"a": "b"}, "ord_1")
    other = await mockpay.create_transaction(1200, "usd", {}, "ord_2")
    assert first["txn_id"] == again["txn_id"]
    assert other["txn_id"] != first["txn_id"]
    assert first["client_params"]["redirect_url"].endswith(first["txn_id"])


async def test_settle_builds_a_verifiable_event(mockpay):
    txn = await mockpay.create_transaction(1200, "usd", {}, "ord_1")
    event = await mockpay.settle(txn["txn_id"], "succeeded")
    assert event["type"] == "payment.succeeded"
    assert event["amount"] == 1200
    assert (await mockpay.retrieve(txn["txn_id"]))["status"] == "succeeded"

    payload, headers = mockpay.signed_webhook(event)
    assert mockpay.verify_webhook(payload, headers) == event

    evt = mockpay.parse_event(event)
    assert evt.kind == KIND_SUCCEEDED
    assert evt.txn_id == txn["txn_id"]
    assert evt.event_id == event["id"]


async def test_settle_unknown_or_invalid(mockpay):
    assert await mockpay.settle("mock_nope", "failed") is None
    with pytest.raises(ValueError):
        await mockpay.settle("mock_nope", "exploded")
    with pytest.raises(KeyError):
        await mockpay.retrieve("mock_nope")


def test_webhook_signature_is_checked(mockpay):
    payload = json.dumps({"type": "payment.succeeded"}).encode()
    with pytest.raises(HTTPException) as ei:
        mockpay.verify_webhook(payload, {"x-mockpay-signature": "bogus"})
    assert ei.value.status_code == 400
    with pytest.raises(HTTPException):
        mockpay.verify_webhook(payload, {})


@pytest.mark.parametrize("raw,kind", [
    ("payment.failed", KIND_FAILED),
    ("payment.canceled", KIND_CANCELED),
    ("payment.refunded", KIND_REFUNDED),
])
def test_event_kinds(mockpay, raw, kind):
    evt = mockpay.parse_event({"type": raw, "txn_id": "t", "id": "e"})
    assert evt.kind == kind
    assert evt.amount is None
