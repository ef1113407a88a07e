import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from approvals_db import (
    approve_deposit,
    approve_withdrawal,
    list_pending_deposits,
    list_withdrawal_requests,
    reject_deposit,
    reject_withdrawal,
    request_deposit,
    request_withdrawal,
)
from commission_config_db import (
    activate_commission_config,
    create_commission_config,
    delete_commission_config,
    get_active_commission_config,
    list_commission_configs,
)
from config import settings
from errors import LedgerError
from money import fmt, to_minor
from purchase_db import cancel_order, create_purchase, update_order_status
from wallet_db import get_earnings_summary, get_wallet_snapshot, verify_wallet_ledger
from webhook import SIGNATURE_HEADER
from webhook_db import reconcile_webhook

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# authentication lives upstream; callers pass the already-verified principal.
# ---------

class PurchaseRequest(BaseModel):
    buyer_id: int = Field(..., description="Authenticated buyer")
    product_id: int


class CancelOrderRequest(BaseModel):
    acting_user_id: int
    reason: Optional[str] = None


class OrderStatusRequest(BaseModel):
    acting_user_id: int
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class WithdrawalCreateRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., description="Major units, e.g. 250.00")
    bank_details: str


class DepositCreateRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., description="Major units, e.g. 500.00")
    transaction_id: str = Field(..., description="External (bank/UPI) transaction reference")
    proof: Optional[str] = None
    requested_by: Optional[int] = None


class ApprovalRequest(BaseModel):
    approver_id: int
    note: Optional[str] = None


class CommissionTier(BaseModel):
    min_customers: int = 0
    min_sales: Decimal = Decimal("0")
    bonus_rate: Decimal


class CommissionConfigRequest(BaseModel):
    company_share: Decimal
    distributor_share: Decimal
    branch_share: Decimal
    customer_point_rate: Decimal = Decimal("0")
    tiers: List[CommissionTier] = []
    active: bool = True
    effective_from: Optional[datetime] = None
    note: Optional[str] = None


# ---------
# helpers for responses (money always as 2 dp strings)
# ---------

def _http_error(e: LedgerError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def _internal_error(what: str) -> HTTPException:
    logger.exception(f"{what} failed")
    return HTTPException(status_code=500, detail="Internal server error")


def _render_breakdown(pricing: Dict[str, int]) -> Dict[str, str]:
    return {k: fmt(v) for k, v in pricing.items()}


def _render_order(order: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(order)
    for key in list(out):
        if key.endswith("_minor"):
            out[key[: -len("_minor")]] = fmt(out.pop(key))
    return out


def _render_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": tx["id"],
        "type": tx["direction"],
        "category": tx["category"],
        "amount": fmt(tx["amount_minor"]),
        "description": tx.get("description"),
        "reference_id": tx["reference_id"],
        "balance_before": fmt(tx["balance_before_minor"]),
        "balance_after": fmt(tx["balance_after_minor"]),
        "meta": tx.get("meta"),
        "created_at": tx["created_at"].isoformat() if tx.get("created_at") else None,
    }


def _render_request(request: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(request)
    out["amount"] = fmt(out.pop("amount_minor"))
    return out


def _render_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)
    for key in ("company_share", "distributor_share", "branch_share", "customer_point_rate"):
        out[key] = str(out[key])
    return out


# ---------
# orders
# ---------

@app.post("/api/orders")
def orders_create(payload: PurchaseRequest):
    """
    buy a product with the wallet.
    402 = top up your wallet, 503 = no commission config yet (try later).
    """
    try:
        result = create_purchase(payload.buyer_id, payload.product_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Order creation")

    return {
        "ok": True,
        "order_id": result["order_id"],
        "final_price": fmt(result["final_price"]),
        "loyalty_points_earned": result["loyalty_points_earned"],
        "direct_sale": result["attribution"]["direct_sale"],
        "breakdown": _render_breakdown(result["breakdown"]),
    }


@app.post("/api/orders/{order_id}/cancel")
def orders_cancel(order_id: int, payload: CancelOrderRequest):
    try:
        order = cancel_order(order_id, payload.acting_user_id, payload.reason)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Order cancellation")

    return {"message": "Order cancelled and refunded successfully", "order": _render_order(order)}


@app.put("/api/orders/{order_id}/status")
def orders_update_status(order_id: int, payload: OrderStatusRequest):
    try:
        order = update_order_status(
            order_id,
            payload.acting_user_id,
            new_status=payload.status,
            tracking_number=payload.tracking_number,
            estimated_delivery=payload.estimated_delivery,
        )
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Order status update")

    return _render_order(order)


# ---------
# payment gateway webhook
# ---------

@app.post("/api/webhook/payment")
async def webhook_payment(request: Request):
    """
    gateway -> wallet credit. the signature covers the raw bytes, so the body
    is read as-is and never re-serialized before verification.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await run_in_threadpool(reconcile_webhook, raw_body, signature)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Webhook processing")

    if "amount" in result:
        result["amount"] = fmt(result["amount"])
        result["balance"] = fmt(result["balance"])
    return result


# ---------
# wallet
# ---------

@app.get("/api/wallet")
def wallet_snapshot(
    user_id: int = Query(..., description="Wallet owner"),
    limit: int = Query(50, ge=1, le=500, description="How many recent transactions"),
):
    try:
        snapshot = get_wallet_snapshot(user_id, limit)
    except Exception:
        raise _internal_error("Wallet fetch")

    return {
        "user_id": user_id,
        "balance": fmt(snapshot["balance"]),
        "currency": snapshot["currency"],
        "loyalty_points": snapshot["loyalty_points"],
        "transactions": [_render_transaction(tx) for tx in snapshot["recent_transactions"]],
    }


@app.get("/api/wallet/earnings")
def wallet_earnings(
    user_id: int = Query(..., description="User ID to fetch earnings for"),
    from_datetime: Optional[datetime] = Query(None, alias="from", description="Start (inclusive), ISO 8601"),
    to_datetime: Optional[datetime] = Query(None, alias="to", description="End (exclusive), ISO 8601"),
):
    try:
        summary = get_earnings_summary(user_id, from_datetime, to_datetime)
    except Exception:
        raise _internal_error("Earnings fetch")

    summary["commission"] = {k: fmt(v) for k, v in summary["commission"].items()}
    for key in ("total_commission", "total_sales", "pending_amount", "received_amount"):
        summary[key] = fmt(summary[key])
    return summary


@app.get("/api/wallet/audit")
def wallet_audit(user_id: int = Query(..., description="Wallet owner")):
    try:
        report = verify_wallet_ledger(user_id)
    except Exception:
        raise _internal_error("Wallet audit")

    report["stored_balance"] = fmt(report["stored_balance"])
    report["replayed_balance"] = fmt(report["replayed_balance"])
    return report


@app.post("/api/wallet/withdrawals")
def withdrawals_create(payload: WithdrawalCreateRequest):
    try:
        request = request_withdrawal(payload.user_id, to_minor(payload.amount), payload.bank_details)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Withdrawal request")

    return {"message": "Withdrawal request created", "request": _render_request(request)}


@app.get("/api/wallet/withdrawals")
def withdrawals_list(user_id: Optional[int] = Query(None, description="Omit to list every request (admin)")):
    try:
        requests = list_withdrawal_requests(user_id)
    except Exception:
        raise _internal_error("List withdrawals")
    return [_render_request(r) for r in requests]


@app.post("/api/wallet/withdrawals/{request_id}/approve")
def withdrawals_approve(request_id: int, payload: ApprovalRequest):
    try:
        approve_withdrawal(request_id, payload.approver_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Approve withdrawal")
    return {"message": "Approved"}


@app.post("/api/wallet/withdrawals/{request_id}/reject")
def withdrawals_reject(request_id: int, payload: ApprovalRequest):
    try:
        reject_withdrawal(request_id, payload.approver_id, payload.note)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Reject withdrawal")
    return {"message": "Rejected"}


@app.post("/api/wallet/deposits")
def deposits_create(payload: DepositCreateRequest):
    try:
        request = request_deposit(
            payload.user_id,
            to_minor(payload.amount),
            payload.transaction_id,
            proof=payload.proof,
            requested_by=payload.requested_by,
        )
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Deposit request")

    return {"message": "Deposit request created", "request": _render_request(request)}


@app.get("/api/wallet/deposits/pending")
def deposits_pending():
    try:
        requests = list_pending_deposits()
    except Exception:
        raise _internal_error("List pending deposits")
    return [_render_request(r) for r in requests]


@app.post("/api/wallet/deposits/{request_id}/approve")
def deposits_approve(request_id: int, payload: ApprovalRequest):
    try:
        approve_deposit(request_id, payload.approver_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Approve deposit")
    return {"message": "Approved"}


@app.post("/api/wallet/deposits/{request_id}/reject")
def deposits_reject(request_id: int, payload: ApprovalRequest):
    try:
        reject_deposit(request_id, payload.approver_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Reject deposit")
    return {"message": "Rejected"}


# ---------
# commission configs (admin; authorization enforced upstream)
# ---------

@app.get("/api/commissions")
def commissions_list():
    try:
        configs = list_commission_configs()
    except Exception:
        raise _internal_error("List commissions")
    return [_render_config(c) for c in configs]


@app.get("/api/commissions/active")
def commissions_active(at: Optional[datetime] = Query(None, description="Historical lookup instant")):
    try:
        config = get_active_commission_config(at)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Get active commission")
    return _render_config(config)


@app.post("/api/commissions", status_code=201)
def commissions_create(payload: CommissionConfigRequest):
    cfg = payload.model_dump(exclude={"active"})
    try:
        config = create_commission_config(cfg, activate=payload.active)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Create commission")
    return _render_config(config)


@app.post("/api/commissions/{config_id}/activate")
def commissions_activate(config_id: int):
    try:
        config = activate_commission_config(config_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Activate commission")
    return _render_config(config)


@app.delete("/api/commissions/{config_id}")
def commissions_delete(config_id: int):
    try:
        delete_commission_config(config_id)
    except LedgerError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("Delete commission")
    return {"message": "Deleted"}
