"""
Consent Receipts — point-in-time consent decisions bound to the evidence
state that justified them.

A receipt's signature is SHA-256 over a compact JSON object with a fixed
field order:

    {"gate", "choice", "commit", "timestamp", "evidence_hash", "user_id"}

where a missing user id is replaced by the "anonymous" sentinel. Field order,
separators and the sentinel are part of the contract; changing any of them
invalidates every receipt issued so far.
"""

import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from uuid import uuid4

ANONYMOUS_USER = "anonymous"

SIGNED_FIELDS = ("gate", "choice", "commit", "timestamp", "evidence_hash", "user_id")


@dataclass
class Receipt:
    id: str
    gate: str
    choice: bool
    commit: str
    timestamp: str
    evidence_hash: str
    user_id: str | None = None
    signature: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    def signing_data(self) -> dict:
        return {name: getattr(self, name) for name in SIGNED_FIELDS}


def canonical_receipt_payload(data: dict) -> str:
    payload = {
        "gate": data.get("gate"),
        "choice": data.get("choice"),
        "commit": data.get("commit"),
        "timestamp": data.get("timestamp"),
        "evidence_hash": data.get("evidence_hash"),
        "user_id": data.get("user_id") or ANONYMOUS_USER,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def sign_receipt(data: dict) -> str:
    """Return the hex SHA-256 signature for a receipt's signed fields."""
    return hashlib.sha256(canonical_receipt_payload(data).encode("utf-8")).hexdigest()


def verify_receipt(data: dict, signature: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_receipt(data), signature)


def hash_payload(data: dict | list | str | None) -> str:
    """SHA-256 over a sorted-key JSON serialization."""
    if data is None:
        return hashlib.sha256(b"null").hexdigest()
    if isinstance(data, str):
        return hashlib.sha256(data.encode("utf-8")).hexdigest()
    raw = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_receipt(
    gate: str,
    choice: bool,
    commit: str,
    evidence_hash: str,
    user_id: str | None = None,
    timestamp: str | None = None,
) -> Receipt:
    """Build and sign a new receipt."""
    receipt = Receipt(
        id=f"RECEIPT.{uuid4().hex}",
        gate=gate,
        choice=choice,
        commit=commit,
        timestamp=timestamp or utc_timestamp(),
        evidence_hash=evidence_hash,
        user_id=user_id,
    )
    receipt.signature = sign_receipt(receipt.signing_data())
    return receipt
