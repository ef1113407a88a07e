import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional

from psycopg import Connection

from commission_config_db import resolve_active_config
from config import settings
from db.db import get_conn
from db.repositories import (
    add_loyalty_points,
    apply_wallet_delta,
    get_order,
    get_principal,
    get_product,
    insert_commission_entry,
    insert_order,
    lock_wallets,
    update_order_fields,
)
from errors import (
    InsufficientFunds,
    InvalidStateForCancellation,
    InvalidStatus,
    NotAuthorized,
    OrderNotFound,
    ProductNotFound,
)
from hierarchy_engine import resolve_attribution
from money import fmt
from pricing_engine import loyalty_points, price_breakdown

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = ("paid", "processing")
TERMINAL_STATUSES = ("cancelled", "refunded")
# money-moving states are only reachable through cancel_order.
# fulfilment only moves forward, in this order.
SETTABLE_STATUSES = ("paid", "processing", "shipped", "delivered", "fulfilled")
STATUS_RANK = {status: rank for rank, status in enumerate(SETTABLE_STATUSES)}


def create_purchase(buyer_id: int, product_id: int) -> Dict[str, Any]:
    """
    DB-backed purchase: debit the buyer, pay commissions, record the order.

    everything happens in one transaction; on any error nothing persists
    (no debit without an order, no order without a debit).
    """
    with get_conn() as conn:
        try:
            result = _create_purchase_in_tx(conn, buyer_id, product_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        f"Order {result['order_id']} paid by user {buyer_id}: "
        f"{fmt(result['final_price'])} ({result['loyalty_points_earned']} points)"
    )
    return result


def _resolve_treasury(conn: Connection) -> Optional[int]:
    treasury_id = settings.TREASURY_USER_ID
    if treasury_id is None:
        logger.warning("TREASURY_USER_ID not configured, company commission will not be paid")
        return None
    if get_principal(conn, treasury_id) is None:
        logger.warning(f"Treasury user {treasury_id} not found, company commission will not be paid")
        return None
    return treasury_id


def _create_purchase_in_tx(conn: Connection, buyer_id: int, product_id: int) -> Dict[str, Any]:
    # 1) hierarchy, config, pricing
    attribution = resolve_attribution(buyer_id, partial(get_principal, conn))
    config = resolve_active_config(conn)

    product = get_product(conn, product_id)
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found")

    pricing = price_breakdown(product["base_price_minor"], attribution, config)
    final_price = pricing["final_price"]

    # 2) beneficiary mapping: (user_id, kind, amount, share)
    payouts = []

    treasury_id = _resolve_treasury(conn)
    if treasury_id is not None and pricing["company_commission"] > 0:
        payouts.append((treasury_id, "company", pricing["company_commission"], config["company_share"]))

    if attribution["distributor_id"] is not None and pricing["distributor_commission"] > 0:
        payouts.append(
            (
                attribution["distributor_id"],
                "distributor",
                pricing["distributor_commission"],
                config["distributor_share"],
            )
        )

    if attribution["branch_id"] is not None and pricing["branch_commission"] > 0:
        payouts.append(
            (attribution["branch_id"], "branch", pricing["branch_commission"], config["branch_share"])
        )

    # 3) lock every wallet we are about to touch, then check funds
    wallets = lock_wallets(conn, [buyer_id] + [p[0] for p in payouts], settings.CURRENCY)
    buyer_wallet = wallets[buyer_id]

    if buyer_wallet["balance_minor"] < final_price:
        raise InsufficientFunds(
            f"Insufficient wallet balance. You have {fmt(buyer_wallet['balance_minor'])}, "
            f"but need {fmt(final_price)}"
        )

    # 4) order + buyer debit
    order = insert_order(
        conn,
        customer_id=buyer_id,
        product_id=product_id,
        attribution=attribution,
        pricing=pricing,
        commission_config_id=config["id"],
        currency=settings.CURRENCY,
    )
    order_ref = str(order["id"])

    debit = apply_wallet_delta(
        conn,
        buyer_wallet,
        direction="debit",
        amount_minor=final_price,
        category="purchase",
        description="Purchase debit",
        reference_id=order_ref,
        meta={"order_id": order["id"], "product_id": product_id},
    )

    # 5) commission credits + commission ledger
    for (user_id, kind, amount, share) in payouts:
        credit = apply_wallet_delta(
            conn,
            wallets[user_id],
            direction="credit",
            amount_minor=amount,
            category="commission",
            description=f"{kind.capitalize()} commission",
            reference_id=order_ref,
            meta={"order_id": order["id"], "kind": kind, "buyer_id": buyer_id},
        )
        insert_commission_entry(
            conn,
            order_id=order["id"],
            transaction_id=debit["id"],
            beneficiary_user_id=user_id,
            kind=kind,
            amount_minor=amount,
            share=share,
        )
        logger.debug(f"Order {order['id']}: {kind} commission {fmt(amount)} -> user {user_id} (tx {credit['id']})")

    # 6) loyalty points, from the config active right now
    points_config = resolve_active_config(conn)
    points = loyalty_points(final_price, points_config["customer_point_rate"])
    if points > 0:
        add_loyalty_points(conn, buyer_wallet["id"], points)
        update_order_fields(conn, order["id"], {"loyalty_points_earned": points})

    return {
        "order_id": order["id"],
        "final_price": final_price,
        "loyalty_points_earned": points,
        "attribution": attribution,
        "breakdown": pricing,
        "commission_config_id": config["id"],
    }


def cancel_order(order_id: int, acting_user_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    refund the buyer and mark the order cancelled.

    rules:
      - only the owning customer or an admin
      - only while status is paid / processing
      - commissions already paid out are NOT reversed
    """
    with get_conn() as conn:
        try:
            order = _cancel_order_in_tx(conn, order_id, acting_user_id, reason)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Order {order_id} cancelled by user {acting_user_id}, refunded {fmt(order['final_price_minor'])}")
    return order


def _cancel_order_in_tx(
    conn: Connection,
    order_id: int,
    acting_user_id: int,
    reason: Optional[str],
) -> Dict[str, Any]:
    # lock the order row first, a second concurrent cancel waits here
    order = get_order(conn, order_id, for_update=True)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")

    actor = get_principal(conn, acting_user_id)
    is_admin = actor is not None and actor["role"] == "admin"
    if not is_admin and acting_user_id != order["customer_id"]:
        raise NotAuthorized("Not authorized to cancel this order")

    if order["status"] not in CANCELLABLE_STATUSES:
        raise InvalidStateForCancellation(f"Order cannot be cancelled in status '{order['status']}'")

    reason = reason or "Customer cancellation"
    wallets = lock_wallets(conn, [order["customer_id"]], settings.CURRENCY)
    apply_wallet_delta(
        conn,
        wallets[order["customer_id"]],
        direction="credit",
        amount_minor=order["final_price_minor"],
        category="refund",
        description="Order cancellation refund",
        reference_id=str(order_id),
        meta={"order_id": order_id, "reason": reason, "cancelled_by": acting_user_id},
    )

    return update_order_fields(
        conn,
        order_id,
        {"status": "cancelled", "cancel_reason": reason, "cancelled_at": datetime.now().astimezone()},
    )


def update_order_status(
    order_id: int,
    acting_user_id: int,
    new_status: Optional[str] = None,
    tracking_number: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    fulfilment updates by the order's distributor or an admin.
    fields are only ever set, never cleared.
    """
    if new_status is not None and new_status not in SETTABLE_STATUSES:
        raise InvalidStatus(f"Invalid status '{new_status}'")

    with get_conn() as conn:
        try:
            order = get_order(conn, order_id, for_update=True)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            actor = get_principal(conn, acting_user_id)
            is_admin = actor is not None and actor["role"] == "admin"
            if not is_admin and (order["distributor_id"] is None or order["distributor_id"] != acting_user_id):
                raise NotAuthorized("Not authorized to update this order")

            if order["status"] in TERMINAL_STATUSES:
                raise InvalidStatus(f"Order is {order['status']} and can no longer change")
            if new_status is not None and STATUS_RANK[new_status] < STATUS_RANK.get(order["status"], -1):
                raise InvalidStatus(f"Order cannot move back from '{order['status']}' to '{new_status}'")

            fields: Dict[str, Any] = {}
            if new_status is not None:
                fields["status"] = new_status
                if new_status == "delivered" and order["delivered_at"] is None:
                    fields["delivered_at"] = datetime.now().astimezone()
            if tracking_number:
                fields["tracking_number"] = tracking_number
            if estimated_delivery is not None:
                fields["estimated_delivery"] = estimated_delivery

            if fields:
                order = update_order_fields(conn, order_id, fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Order {order_id} updated by user {acting_user_id}: {order['status']}")
    return order
