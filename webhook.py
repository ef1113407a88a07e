"""
payment gateway webhook helpers (pure, no DB).

wire format (Razorpay style):
  {
    "event": "payment.captured",
    "payload": {"payment": {"entity": {
        "id": "pay_abc", "amount": 50000, "notes": {"userId": "42"}
    }}}
  }
signature: hex HMAC-SHA256 of the raw body, sent in X-Razorpay-Signature.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from errors import InvalidSignature, InvalidWebhookPayload, MissingBuyerReference

SIGNATURE_HEADER = "X-Razorpay-Signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """
    raises InvalidSignature unless `signature` is the HMAC of `raw_body`.
    compare is constant-time.
    """
    if not signature:
        raise InvalidSignature("Missing webhook signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip()):
        raise InvalidSignature("Invalid webhook signature")


def parse_payment_event(raw_body: bytes) -> Dict[str, Any]:
    """
    pull (payment_id, amount_minor, user_id) out of the webhook body.
    amount is already in minor units (paise), we keep it that way.
    """
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidWebhookPayload("Webhook body is not valid JSON")
    if not isinstance(body, dict):
        raise InvalidWebhookPayload("Webhook body must be a JSON object")

    entity = ((body.get("payload") or {}).get("payment") or {}).get("entity")
    if not isinstance(entity, dict):
        raise InvalidWebhookPayload("payload.payment.entity missing")

    payment_id = entity.get("id")
    if not payment_id or not isinstance(payment_id, str):
        raise InvalidWebhookPayload("payment id missing")

    amount = entity.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidWebhookPayload("payment amount must be a positive integer (minor units)")

    notes = entity.get("notes") or {}
    user_ref = notes.get("userId") if isinstance(notes, dict) else None
    if user_ref is None or user_ref == "":
        raise MissingBuyerReference("User ID missing in payment notes")
    try:
        user_id = int(user_ref)
    except (TypeError, ValueError):
        raise MissingBuyerReference(f"User ID in payment notes is not valid: {user_ref!r}")

    return {
        "event": body.get("event"),
        "payment_id": payment_id,
        "amount_minor": amount,
        "user_id": user_id,
    }
