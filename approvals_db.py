"""
human-approved transfers between external rails and the wallet.

both request kinds are a two-state machine: pending -> approved | rejected.
the request row is locked FOR UPDATE before its status is read, so the
"already processed" guard holds under concurrent admin clicks.
"""
import logging
from typing import Any, Dict, List, Optional

from psycopg import Connection

from config import settings
from db.db import get_conn
from db.repositories import (
    apply_wallet_delta,
    get_principal,
    get_request_for_update,
    get_wallet,
    insert_deposit_request,
    insert_withdrawal_request,
    list_pending_deposits as _list_pending_deposits,
    list_withdrawal_requests as _list_withdrawal_requests,
    lock_wallets,
    mark_request_processed,
)
from errors import (
    CustomerNotFound,
    InsufficientBalance,
    InvalidRequest,
    NotAuthorized,
    RequestAlreadyProcessed,
    RequestNotFound,
)
from money import fmt, require_positive

logger = logging.getLogger(__name__)

DEPOSITS = "deposit_requests"
WITHDRAWALS = "withdrawal_requests"


def _require_admin(conn: Connection, approver_id: int) -> None:
    approver = get_principal(conn, approver_id)
    if approver is None or approver["role"] != "admin":
        raise NotAuthorized("Forbidden, admin only")


def _require_user(conn: Connection, user_id: int) -> None:
    if get_principal(conn, user_id) is None:
        raise CustomerNotFound(f"User {user_id} not found")


def _load_pending(conn: Connection, table: str, request_id: int) -> Dict[str, Any]:
    request = get_request_for_update(conn, table, request_id)
    if request is None:
        raise RequestNotFound(f"Request {request_id} not found")
    if request["status"] != "pending":
        raise RequestAlreadyProcessed(f"Request {request_id} already {request['status']}")
    return request


# ---------
# withdrawals
# ---------

def request_withdrawal(user_id: int, amount_minor: int, bank_details: str) -> Dict[str, Any]:
    """
    open a withdrawal request. the balance is checked here as a courtesy and
    checked again at approval time, it may have moved in between.
    """
    require_positive(amount_minor)
    if not bank_details or not bank_details.strip():
        raise InvalidRequest("Bank details required")

    with get_conn() as conn:
        try:
            _require_user(conn, user_id)
            wallet = get_wallet(conn, user_id)
            if wallet is None or wallet["balance_minor"] < amount_minor:
                raise InsufficientBalance("Insufficient balance")
            request = insert_withdrawal_request(conn, user_id, amount_minor, bank_details.strip())
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Withdrawal request {request['id']} opened by user {user_id} for {fmt(amount_minor)}")
    return request


def approve_withdrawal(request_id: int, approver_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            _require_admin(conn, approver_id)
            request = _load_pending(conn, WITHDRAWALS, request_id)

            wallets = lock_wallets(conn, [request["user_id"]], settings.CURRENCY)
            wallet = wallets[request["user_id"]]
            if wallet["balance_minor"] < request["amount_minor"]:
                raise InsufficientBalance("Insufficient user balance")

            apply_wallet_delta(
                conn,
                wallet,
                direction="debit",
                amount_minor=request["amount_minor"],
                category="withdrawal",
                description="Withdrawal approved",
                reference_id=f"withdrawal:{request_id}",
                meta={"request_id": request_id, "approved_by": approver_id},
            )
            request = mark_request_processed(conn, WITHDRAWALS, request_id, "approved", approver_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Withdrawal request {request_id} approved by {approver_id}")
    return request


def reject_withdrawal(request_id: int, approver_id: int, note: Optional[str] = None) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            _require_admin(conn, approver_id)
            _load_pending(conn, WITHDRAWALS, request_id)
            request = mark_request_processed(conn, WITHDRAWALS, request_id, "rejected", approver_id, note)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Withdrawal request {request_id} rejected by {approver_id}")
    return request


def list_withdrawal_requests(user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return _list_withdrawal_requests(conn, user_id)


# ---------
# deposits
# ---------

def request_deposit(
    user_id: int,
    amount_minor: int,
    external_txn_id: str,
    proof: Optional[str] = None,
    requested_by: Optional[int] = None,
) -> Dict[str, Any]:
    """
    record an offline deposit (bank transfer / UPI reference) awaiting review.
    requested_by is set when a branch files it on behalf of a customer.
    """
    require_positive(amount_minor)
    if not external_txn_id or not external_txn_id.strip():
        raise InvalidRequest("Transaction ID required")

    with get_conn() as conn:
        try:
            _require_user(conn, user_id)
            request = insert_deposit_request(
                conn,
                user_id,
                amount_minor,
                external_txn_id.strip(),
                proof,
                requested_by if requested_by is not None else user_id,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Deposit request {request['id']} opened for user {user_id}: {fmt(amount_minor)}")
    return request


def approve_deposit(request_id: int, approver_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            _require_admin(conn, approver_id)
            request = _load_pending(conn, DEPOSITS, request_id)

            wallets = lock_wallets(conn, [request["user_id"]], settings.CURRENCY)
            apply_wallet_delta(
                conn,
                wallets[request["user_id"]],
                direction="credit",
                amount_minor=request["amount_minor"],
                category="deposit",
                description="Deposit approved",
                reference_id=f"deposit:{request_id}",
                meta={"request_id": request_id, "external_txn_id": request["external_txn_id"]},
            )
            request = mark_request_processed(conn, DEPOSITS, request_id, "approved", approver_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Deposit request {request_id} approved by {approver_id}")
    return request


def reject_deposit(request_id: int, approver_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            _require_admin(conn, approver_id)
            _load_pending(conn, DEPOSITS, request_id)
            request = mark_request_processed(conn, DEPOSITS, request_id, "rejected", approver_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Deposit request {request_id} rejected by {approver_id}")
    return request


def list_pending_deposits() -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return _list_pending_deposits(conn)
