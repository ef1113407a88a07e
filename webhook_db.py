import logging
from typing import Any, Dict, Optional

from psycopg import Connection

from config import settings
from db.db import get_conn
from db.repositories import (
    activate_user_if_pending,
    apply_wallet_delta,
    ensure_gateway_payment,
    find_transaction_by_reference,
    get_principal,
    lock_wallets,
)
from errors import CustomerNotFound, InvalidSignature
from money import fmt
from webhook import parse_payment_event, verify_signature

logger = logging.getLogger(__name__)


def _check_signature(raw_body: bytes, signature: Optional[str]) -> None:
    secret = settings.WEBHOOK_SECRET
    if not secret:
        if settings.is_test:
            logger.warning("WEBHOOK_SECRET not configured, accepting unsigned webhook (test environment)")
            return
        logger.error("WEBHOOK_SECRET not configured, rejecting webhook")
        raise InvalidSignature("Webhook secret not configured")
    try:
        verify_signature(raw_body, signature, secret)
    except InvalidSignature:
        logger.warning("Invalid webhook signature")
        raise


def reconcile_webhook(raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    gateway payment -> wallet credit, at most once per payment id.

    returns {"status": "applied" | "already-processed", "payment_id", ...}.
    signature is checked on the raw bytes before anything is parsed.
    """
    _check_signature(raw_body, signature)
    event = parse_payment_event(raw_body)

    with get_conn() as conn:
        try:
            result = _reconcile_in_tx(conn, event)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    if result["status"] == "applied":
        logger.info(f"Payment {event['payment_id']} credited {fmt(event['amount_minor'])} to user {event['user_id']}")
    else:
        logger.info(f"Payment {event['payment_id']} already processed, skipping")
    return result


def _reconcile_in_tx(conn: Connection, event: Dict[str, Any]) -> Dict[str, Any]:
    payment_id = event["payment_id"]
    user_id = event["user_id"]
    amount = event["amount_minor"]

    duplicate = {"status": "already-processed", "payment_id": payment_id}

    # 1) already credited as a deposit?
    if find_transaction_by_reference(conn, payment_id, "deposit") is not None:
        return duplicate

    user = get_principal(conn, user_id)
    if user is None:
        raise CustomerNotFound(f"User {user_id} not found")

    # 2) claim the idempotency key; a concurrent delivery blocks here
    if not ensure_gateway_payment(conn, payment_id, user_id, amount):
        return duplicate

    # 3) credit
    wallets = lock_wallets(conn, [user_id], settings.CURRENCY)
    tx = apply_wallet_delta(
        conn,
        wallets[user_id],
        direction="credit",
        amount_minor=amount,
        category="deposit",
        description="Wallet load via payment gateway",
        reference_id=payment_id,
        meta={"gateway_event": event.get("event")},
    )

    # 4) first funded deposit activates a pending account
    activated = activate_user_if_pending(conn, user_id)

    return {
        "status": "applied",
        "payment_id": payment_id,
        "user_id": user_id,
        "amount": amount,
        "balance": tx["balance_after_minor"],
        "account_activated": activated,
    }
