from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings
from db.db import get_conn
from db.repositories import (
    get_approved_withdrawals_total,
    get_attributed_sales,
    get_commission_totals,
    get_recent_transactions,
    get_wallet,
    get_wallet_transactions_in_order,
)

COMMISSION_KINDS = ["company", "distributor", "branch"]


def get_wallet_snapshot(user_id: int, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    read-only: balance, loyalty points and the most recent ledger rows.
    a user without a wallet yet reads as an empty one (nothing is created).
    """
    limit = limit or settings.RECENT_TRANSACTIONS_LIMIT
    with get_conn() as conn:
        wallet = get_wallet(conn, user_id)
        transactions = get_recent_transactions(conn, user_id, limit) if wallet else []

    return {
        "user_id": user_id,
        "balance": wallet["balance_minor"] if wallet else 0,
        "loyalty_points": wallet["loyalty_points"] if wallet else 0,
        "currency": wallet["currency"] if wallet else settings.CURRENCY,
        "recent_transactions": transactions,
    }


def get_earnings_summary(
    user_id: int,
    from_datetime: Optional[datetime] = None,
    to_datetime: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    dashboard totals for a distributor / branch / treasury account.

    - commission: sum of commission_ledger per kind, optionally within [from, to)
    - sales: orders routed through the user (all-time)
    - pending: current wallet balance
    - received: approved withdrawals
    """
    with get_conn() as conn:
        totals = get_commission_totals(conn, user_id, from_datetime, to_datetime)
        sales = get_attributed_sales(conn, user_id)
        wallet = get_wallet(conn, user_id)
        received = get_approved_withdrawals_total(conn, user_id)

    commission = {kind: totals.get(kind, 0) for kind in COMMISSION_KINDS}
    return {
        "user_id": user_id,
        "commission": commission,
        "total_commission": sum(commission.values()),
        "order_count": sales["order_count"],
        "total_sales": sales["total_sales"],
        "pending_amount": wallet["balance_minor"] if wallet else 0,
        "received_amount": received,
        "range": {
            "from": from_datetime.isoformat() if from_datetime else None,
            "to": to_datetime.isoformat() if to_datetime else None,
        },
    }


def replay_balances(transactions: List[Dict[str, Any]], opening_balance: int = 0) -> Dict[str, Any]:
    """
    walk ledger rows oldest-first and check every before/after snapshot.
    returns {"balance": replayed closing balance, "mismatches": [tx ids]}.
    """
    balance = opening_balance
    mismatches = []
    for tx in transactions:
        signed = tx["amount_minor"] if tx["direction"] == "credit" else -tx["amount_minor"]
        if tx["balance_before_minor"] != balance or tx["balance_after_minor"] != balance + signed:
            mismatches.append(tx["id"])
        balance += signed
    return {"balance": balance, "mismatches": mismatches}


def verify_wallet_ledger(user_id: int) -> Dict[str, Any]:
    """replay a wallet's transactions and compare with the stored balance."""
    with get_conn() as conn:
        wallet = get_wallet(conn, user_id)
        if wallet is None:
            return {"user_id": user_id, "ok": True, "stored_balance": 0, "replayed_balance": 0, "mismatches": []}
        transactions = get_wallet_transactions_in_order(conn, wallet["id"])

    replay = replay_balances(transactions)
    return {
        "user_id": user_id,
        "ok": not replay["mismatches"] and replay["balance"] == wallet["balance_minor"],
        "stored_balance": wallet["balance_minor"],
        "replayed_balance": replay["balance"],
        "mismatches": replay["mismatches"],
    }
