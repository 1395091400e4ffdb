from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, TypedDict
from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker
import os
import uuid
import hmac
import hashlib
import base64
import json
from .helpers import now_ts
from .infra.sql import Gated
from .model.orm import MockTransaction

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# Normalized processor event kinds
KIND_SUCCEEDED = "payment_succeeded"
KIND_FAILED = "payment_failed"
KIND_CANCELED = "payment_canceled"
KIND_REFUNDED = "payment_refunded"

# Authoritative transaction statuses returned by retrieve()
TXN_PENDING = "pending"
TXN_SUCCEEDED = "succeeded"
TXN_FAILED = "failed"
TXN_CANCELED = "canceled"
TXN_REFUNDED = "refunded"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateTxnResult(TypedDict):
    txn_id: str
    client_params: Dict[str, Any]


class TxnStatus(TypedDict):
    status: str  # pending | succeeded | failed | canceled | refunded
    amount: int


@dataclass(frozen=True)
class ProcessorEvent:
    kind: str  # one of KIND_* or the processor's raw type when unknown
    txn_id: str
    amount: Optional[int]
    event_id: Optional[str]


class PaymentAdapter(ABC):
    name: str = "abstract"

    @abstractmethod
    async def create_transaction(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: str,
    ) -> CreateTxnResult: ...

    @abstractmethod
    async def retrieve(self, txn_id: str) -> TxnStatus: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    def parse_event(self, event: dict) -> ProcessorEvent: ...

    async def client_params(self, txn_id: str) -> Dict[str, Any]:
        """Client parameters for an already opened transaction."""
        return {"txn_id": txn_id}


def sign_mock_payload(payload: bytes, secret: str = MOCK_SECRET) -> str:
    return base64.b64encode(
        hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    ).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Development processor. Transactions live in mockpay_transactions so
    that every worker (and the reconciler) sees the same "processor".
    """
    name = "mockpay"

    _KINDS = {
        "succeeded": KIND_SUCCEEDED,
        "failed": KIND_FAILED,
        "canceled": KIND_CANCELED,
        "refunded": KIND_REFUNDED,
    }

    def __init__(self, SessionAsync: async_sessionmaker, gated: Gated,
                 secret: str = MOCK_SECRET) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.secret = secret

    async def create_transaction(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: str,
    ) -> CreateTxnResult:
        async with self.SessionAsync() as db:
            async with self.gated():
                async with db.begin():
                    row = (await db.execute(text("""
                        SELECT id FROM mockpay_transactions
                        WHERE idempotency_key=:k
                    """), {"k": idempotency_key})).first()
                    if row:
                        txn_id = row[0]
                    else:
                        txn_id = f"mock_{uuid.uuid4().hex}"
                        db.add(MockTransaction(
                            id=txn_id,
                            amount=amount,
                            currency=currency,
                            status=TXN_PENDING,
                            idempotency_key=idempotency_key,
                            metadata_json=json.dumps(metadata),
                            created_at=now_ts(),
                        ))
        return {
            "txn_id": txn_id,
            "client_params": await self.client_params(txn_id),
        }

    async def client_params(self, txn_id: str) -> Dict[str, Any]:
        return {"txn_id": txn_id, "redirect_url": f"/mockpay/{txn_id}"}

    async def retrieve(self, txn_id: str) -> TxnStatus:
        async with self.SessionAsync() as db:
            async with self.gated():
                async with db.begin():
                    row = (await db.execute(text("""
                        SELECT status, amount FROM mockpay_transactions
                        WHERE id=:id
                    """), {"id": txn_id})).first()
        if row is None:
            raise KeyError(txn_id)
        return {"status": row[0], "amount": int(row[1])}

    async def settle(self, txn_id: str, outcome: str) -> Optional[dict]:
        """
        Move the transaction to ``outcome`` and return the event the
        processor would send, or None for an unknown transaction.
        """
        if outcome not in self._KINDS:
            raise ValueError(f"invalid outcome {outcome!r}")
        async with self.SessionAsync() as db:
            async with self.gated():
                async with db.begin():
                    row = (await db.execute(text("""
                        UPDATE mockpay_transactions SET status=:s
                        WHERE id=:id
                        RETURNING amount, currency
                    """), {"s": outcome, "id": txn_id})).first()
        if row is None:
            return None
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{outcome}",
            "txn_id": txn_id,
            "amount": int(row[0]),
            "currency": row[1],
            "created_at": int(now_ts()),
        }

    def signed_webhook(self, event: dict) -> Tuple[bytes, Dict[str, str]]:
        payload = json.dumps(event).encode()
        return payload, {
            "x-mockpay-signature": sign_mock_payload(payload, self.secret),
            "content-type": "application/json",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = sign_mock_payload(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def parse_event(self, event: dict) -> ProcessorEvent:
        raw = event.get("type", "")
        kind = self._KINDS.get(raw.split(".")[-1], raw)
        amount = event.get("amount")
        return ProcessorEvent(
            kind=kind,
            txn_id=event.get("txn_id", ""),
            amount=int(amount) if amount is not None else None,
            event_id=event.get("id"),
        )
