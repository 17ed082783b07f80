"""Tests for receipt signing and verification."""

import json

import pytest

from openledger.services.receipts import (
    ANONYMOUS_USER,
    canonical_receipt_payload,
    create_receipt,
    hash_payload,
    sign_receipt,
    verify_receipt,
)

RECEIPT_DATA = {
    "gate": "acct_profile",
    "choice": True,
    "commit": "abc123",
    "timestamp": "2026-03-01T12:00:00Z",
    "evidence_hash": "f" * 64,
    "user_id": "user-1",
}


class TestSigning:
    def test_sign_then_verify(self):
        assert verify_receipt(RECEIPT_DATA, sign_receipt(RECEIPT_DATA))

    @pytest.mark.parametrize("field,value", [
        ("gate", "txn_category"),
        ("choice", False),
        ("commit", "def456"),
        ("timestamp", "2026-03-01T12:00:01Z"),
        ("evidence_hash", "0" * 64),
        ("user_id", "user-2"),
    ])
    def test_any_field_change_fails_verification(self, field, value):
        signature = sign_receipt(RECEIPT_DATA)
        assert not verify_receipt({**RECEIPT_DATA, field: value}, signature)

    def test_empty_signature_fails(self):
        assert not verify_receipt(RECEIPT_DATA, "")

    def test_payload_field_order_and_anonymous_user(self):
        payload = canonical_receipt_payload({**RECEIPT_DATA, "user_id": None})
        assert list(json.loads(payload)) == ["gate", "choice", "commit", "timestamp", "evidence_hash", "user_id"]
        assert json.loads(payload)["user_id"] == ANONYMOUS_USER
        assert " " not in payload

    def test_missing_user_equals_anonymous(self):
        anonymous = {**RECEIPT_DATA, "user_id": ANONYMOUS_USER}
        assert sign_receipt({**RECEIPT_DATA, "user_id": None}) == sign_receipt(anonymous)


class TestCreateReceipt:
    def test_created_receipt_verifies(self):
        receipt = create_receipt("acct_profile", True, "abc123", "f" * 64)
        assert receipt.id.startswith("RECEIPT.")
        assert receipt.timestamp.endswith("Z")
        assert verify_receipt(receipt.signing_data(), receipt.signature)

    def test_hash_payload_ignores_key_order(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})
        assert hash_payload(None) != hash_payload([])
