"""Admission tokens.

A token is the urlsafe base64 (unpadded) of ``payload || tag`` where
``payload`` is canonical JSON ``{"e": event_id, "iat": issued_at,
"t": ticket_id, "v": 1}`` and ``tag`` is the 32-byte HMAC-SHA-256 of the
payload under the server secret. Verification needs no database.
"""
from __future__ import annotations
import base64
import binascii
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Optional

SIGNING_SECRET = os.environ.get(
    "TICKET_SIGNING_SECRET", "dev-ticket-secret-change-me"
)

TOKEN_VERSION = 1
TAG_LEN = hashlib.sha256().digest_size

REASON_PARSE_ERROR = "parse_error"
REASON_INVALID_SIGNATURE = "invalid_signature"


@dataclass(frozen=True)
class Verification:
    valid: bool
    ticket_id: Optional[str] = None
    event_id: Optional[str] = None
    issued_at: Optional[int] = None
    reason: Optional[str] = None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    raw = base64.b64decode(padded, altchars=b"-_", validate=True)
    # the last character may carry unused low bits; only one spelling counts
    if _b64encode(raw) != token:
        raise ValueError("non-canonical token encoding")
    return raw


def canonical_payload(ticket_id: str, event_id: str, issued_at: int) -> bytes:
    return json.dumps(
        {"e": event_id, "iat": int(issued_at), "t": ticket_id,
         "v": TOKEN_VERSION},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


class TicketSigner:
    def __init__(self, secret: str = SIGNING_SECRET) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")

    def _tag(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def issue(self, ticket_id: str, event_id: str, issued_at: float) -> str:
        payload = canonical_payload(ticket_id, event_id, int(issued_at))
        return _b64encode(payload + self._tag(payload))

    def verify(self, token: str) -> Verification:
        if not isinstance(token, str) or not token:
            return Verification(valid=False, reason=REASON_PARSE_ERROR)
        try:
            raw = _b64decode(token)
        except (binascii.Error, ValueError):
            return Verification(valid=False, reason=REASON_PARSE_ERROR)
        if len(raw) <= TAG_LEN:
            return Verification(valid=False, reason=REASON_PARSE_ERROR)

        payload, tag = raw[:-TAG_LEN], raw[-TAG_LEN:]
        if not hmac.compare_digest(self._tag(payload), tag):
            return Verification(valid=False, reason=REASON_INVALID_SIGNATURE)

        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return Verification(valid=False, reason=REASON_PARSE_ERROR)
        if not isinstance(data, dict) or data.get("v") != TOKEN_VERSION:
            return Verification(valid=False, reason=REASON_PARSE_ERROR)

        ticket_id, event_id, iat = data.get("t"), data.get("e"), data.get("iat")
        if not isinstance(ticket_id, str) or not isinstance(event_id, str) \
                or not isinstance(iat, int):
            return Verification(valid=False, reason=REASON_PARSE_ERROR)
        return Verification(
            valid=True, ticket_id=ticket_id, event_id=event_id, issued_at=iat
        )
