from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from commission_config import select_active_config
from errors import InsufficientFunds, ProductNotFound
from hierarchy_engine import resolve_attribution
from money import fmt
from pricing_engine import loyalty_points, price_breakdown

TREASURY_USER_ID = "TREASURY"


def _wallet(wallets: Dict[Any, Dict[str, int]], user_id) -> Dict[str, int]:
    # lazily created on first need
    return wallets.setdefault(user_id, {"balance": 0, "loyalty_points": 0})


def handle_purchase(
    buyer_id,
    product_id,
    users: Dict[Any, Dict[str, Any]],
    products: Dict[Any, Dict[str, Any]],
    configs: List[Dict[str, Any]],
    wallets: Dict[Any, Dict[str, int]],
    journal: List[Dict[str, Any]],
    orders: List[Dict[str, Any]],
    treasury_id: Optional[Any] = TREASURY_USER_ID,
) -> Dict[str, Any]:
    """
    process a single purchase against in-memory "tables":
      - resolve hierarchy
      - resolve active commission config
      - price the product
      - debit buyer, credit treasury / distributor / branch
      - award loyalty points

    parameters
    ----------
    users : dict   user_id -> {"id", "role", "parent_id"}
    products : dict   product_id -> {"id", "base_price"} (minor units)
    configs : list   commission configs (see commission_config.select_active_config)
    wallets : dict   user_id -> {"balance": int, "loyalty_points": int}
    journal : list   append-only ledger entries, one per balance movement
    orders : list   append-only order records
    treasury_id : who gets the company commission, None = not paid

    everything is validated before the first mutation, so a failure leaves
    wallets / journal / orders untouched.
    """
    # 1) hierarchy + config + pricing (pure)
    attribution = resolve_attribution(buyer_id, users.get)
    config = select_active_config(configs)

    product = products.get(product_id)
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found")

    pricing = price_breakdown(product.get("base_price"), attribution, config)
    final_price = pricing["final_price"]

    # 2) funds check
    buyer_balance = wallets.get(buyer_id, {}).get("balance", 0)
    if buyer_balance < final_price:
        raise InsufficientFunds(
            f"Insufficient wallet balance. You have {fmt(buyer_balance)}, but need {fmt(final_price)}"
        )

    # 3) build movements: (user_id, signed amount, category, kind)
    movements = [(buyer_id, -final_price, "purchase", None)]
    if treasury_id is not None and pricing["company_commission"] > 0:
        movements.append((treasury_id, pricing["company_commission"], "commission", "company"))
    if attribution["distributor_id"] is not None and pricing["distributor_commission"] > 0:
        movements.append(
            (attribution["distributor_id"], pricing["distributor_commission"], "commission", "distributor")
        )
    if attribution["branch_id"] is not None and pricing["branch_commission"] > 0:
        movements.append((attribution["branch_id"], pricing["branch_commission"], "commission", "branch"))

    # 4) apply
    now = datetime.now(timezone.utc)
    order_id = len(orders) + 1

    for (user_id, delta, category, kind) in movements:
        wallet = _wallet(wallets, user_id)
        before = wallet["balance"]
        wallet["balance"] = before + delta
        journal.append(
            {
                "order_id": order_id,
                "user_id": user_id,
                "direction": "debit" if delta < 0 else "credit",
                "amount": abs(delta),
                "category": category,
                "kind": kind,
                "balance_before": before,
                "balance_after": wallet["balance"],
                "created_at": now,
            }
        )

    points = loyalty_points(final_price, config.get("customer_point_rate"))
    _wallet(wallets, buyer_id)["loyalty_points"] += points

    order = {
        "id": order_id,
        "customer_id": buyer_id,
        "product_id": product_id,
        "distributor_id": attribution["distributor_id"],
        "branch_id": attribution["branch_id"],
        "commission_config_id": config.get("id"),
        "base_rate": pricing["base_rate"],
        "company_commission": pricing["company_commission"],
        "distributor_commission": pricing["distributor_commission"],
        "branch_commission": pricing["branch_commission"],
        "final_price_paid": final_price,
        "status": "paid",
        "loyalty_points_earned": points,
        "created_at": now,
    }
    orders.append(order)

    return {
        "order_id": order_id,
        "final_price": final_price,
        "loyalty_points_earned": points,
        "attribution": attribution,
        "breakdown": pricing,
    }
