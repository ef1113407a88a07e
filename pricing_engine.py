from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional

from errors import ProductNotPriced
from money import MINOR_UNITS, apply_share


def price_breakdown(
    base_rate_minor: Optional[int],
    attribution: Dict[str, Any],
    config: Dict[str, Any],
) -> Dict[str, int]:
    """
    base_rate_minor: product base price in minor units
    attribution: output of hierarchy_engine.resolve_attribution
    config: active commission config (company_share, distributor_share, branch_share)

    every component is rounded half-even to a whole minor unit on its own,
    final is the plain integer sum, so final == base + all commissions exactly.
    """
    if base_rate_minor is None or base_rate_minor <= 0:
        raise ProductNotPriced("Product has no base price")

    company = apply_share(base_rate_minor, config.get("company_share") or 0)

    distributor = 0
    if attribution.get("distributor_id") is not None:
        distributor = apply_share(base_rate_minor, config.get("distributor_share") or 0)

    branch = 0
    if attribution.get("branch_id") is not None:
        branch = apply_share(base_rate_minor, config.get("branch_share") or 0)

    return {
        "base_rate": base_rate_minor,
        "company_commission": company,
        "distributor_commission": distributor,
        "branch_commission": branch,
        "final_price": base_rate_minor + company + distributor + branch,
    }


def loyalty_points(final_price_minor: int, point_rate) -> int:
    """floor(final price in major units x rate)."""
    if not point_rate:
        return 0
    points = Decimal(final_price_minor) / MINOR_UNITS * Decimal(str(point_rate))
    return int(points.to_integral_value(rounding=ROUND_FLOOR))
