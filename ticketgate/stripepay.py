"""Stripe PaymentIntents adapter on top of the stripe SDK."""
from __future__ import annotations
import logging
import os
from typing import Any, Dict

import stripe
from fastapi import HTTPException

from .errors import ProcessorError
from .mockpay import (
    KIND_CANCELED, KIND_FAILED, KIND_REFUNDED, KIND_SUCCEEDED,
    TXN_CANCELED, TXN_FAILED, TXN_PENDING, TXN_SUCCEEDED,
    CreateTxnResult, PaymentAdapter, ProcessorEvent, TxnStatus,
)

log = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")
SIGNATURE_TOLERANCE_SECONDS = 300

EVENT_KINDS = {
    "payment_intent.succeeded": KIND_SUCCEEDED,
    "payment_intent.payment_failed": KIND_FAILED,
    "payment_intent.canceled": KIND_CANCELED,
    "charge.refunded": KIND_REFUNDED,
}


def _processor_error(e: stripe.StripeError) -> ProcessorError:
    if isinstance(e, stripe.APIConnectionError):
        return ProcessorError(f"stripe unreachable: {e.user_message or e}")
    return ProcessorError(f"stripe rejected request: {e.user_message or e}")


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(
        self,
        secret_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        publishable_key: str = STRIPE_PUBLISHABLE_KEY,
        stripe_client=stripe,
    ) -> None:
        self._stripe = stripe_client
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key

    async def create_transaction(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: str,
    ) -> CreateTxnResult:
        try:
            pi = await self._stripe.PaymentIntent.create_async(
                amount=amount,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=idempotency_key,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            log.warning("stripe create failed: %s (%s)", e, type(e).__name__)
            raise _processor_error(e) from e
        pi = pi.to_dict()
        return {"txn_id": pi["id"], "client_params": self._params(pi)}

    async def _intent(self, txn_id: str) -> Dict[str, Any]:
        try:
            pi = await self._stripe.PaymentIntent.retrieve_async(
                txn_id, api_key=self.secret_key
            )
        except stripe.StripeError as e:
            log.warning("stripe retrieve %s failed: %s", txn_id, e)
            raise _processor_error(e) from e
        return pi.to_dict()

    def _params(self, pi: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "client_secret": pi.get("client_secret"),
            "publishable_key": self.publishable_key,
            "payment_intent_id": pi["id"],
        }

    async def client_params(self, txn_id: str) -> Dict[str, Any]:
        return self._params(await self._intent(txn_id))

    async def retrieve(self, txn_id: str) -> TxnStatus:
        pi = await self._intent(txn_id)
        status = pi.get("status", "")
        if status == "succeeded":
            mapped = TXN_SUCCEEDED
        elif status == "canceled":
            mapped = TXN_CANCELED
        elif (status == "requires_payment_method"
              and pi.get("last_payment_error")):
            mapped = TXN_FAILED
        else:
            # processing, requires_action, requires_confirmation, ...
            mapped = TXN_PENDING
        amount = pi.get("amount_received") or pi.get("amount") or 0
        return {"status": mapped, "amount": int(amount)}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        try:
            event = self._stripe.Webhook.construct_event(
                payload,
                headers.get("stripe-signature") or "",
                self.webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as e:
            log.warning("stripe webhook signature invalid: %s", e)
            raise HTTPException(status_code=400, detail="Invalid signature")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        return event.to_dict()

    def parse_event(self, event: dict) -> ProcessorEvent:
        raw = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        kind = EVENT_KINDS.get(raw, raw)
        if raw.startswith("charge."):
            txn_id = obj.get("payment_intent") or ""
            amount = obj.get("amount")
        else:
            txn_id = obj.get("id") or ""
            amount = obj.get("amount_received") or obj.get("amount")
        return ProcessorEvent(
            kind=kind,
            txn_id=txn_id,
            amount=int(amount) if amount is not None else None,
            event_id=event.get("id"),
        )
