from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from errors import ConfigurationMissing, InvalidCommissionConfig

SHARE_FIELDS = ("company_share", "distributor_share", "branch_share")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _as_decimal(name: str, value) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidCommissionConfig(f"{name} is required")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidCommissionConfig(f"{name} must be a number")


def _fraction(name: str, value) -> Decimal:
    d = _as_decimal(name, value)
    if d < 0 or d > 1:
        raise InvalidCommissionConfig(f"{name} must be between 0 and 1")
    return d


def validate_commission_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    normalize an admin-supplied config into Decimals and check bounds.

    rules:
      - company/distributor/branch shares are fractions in [0, 1]
      - customer_point_rate >= 0
      - tiers: list of {min_customers >= 0, min_sales >= 0, bonus_rate in [0, 1]}
    """
    out: Dict[str, Any] = {}
    for field in SHARE_FIELDS:
        out[field] = _fraction(field, cfg.get(field))

    rate = _as_decimal("customer_point_rate", cfg.get("customer_point_rate", 0))
    if rate < 0:
        raise InvalidCommissionConfig("customer_point_rate cannot be negative")
    out["customer_point_rate"] = rate

    tiers: List[Dict[str, Any]] = []
    for i, tier in enumerate(cfg.get("tiers") or []):
        if not isinstance(tier, dict):
            raise InvalidCommissionConfig(f"tier {i} must be an object")
        try:
            min_customers = int(tier.get("min_customers", 0))
        except (TypeError, ValueError):
            raise InvalidCommissionConfig(f"tiers[{i}].min_customers must be an integer")
        min_sales = _as_decimal(f"tiers[{i}].min_sales", tier.get("min_sales", 0))
        if min_customers < 0 or min_sales < 0:
            raise InvalidCommissionConfig(f"tier {i} thresholds cannot be negative")
        tiers.append(
            {
                "min_customers": min_customers,
                "min_sales": str(min_sales),
                "bonus_rate": str(_fraction(f"tiers[{i}].bonus_rate", tier.get("bonus_rate"))),
            }
        )
    out["tiers"] = tiers

    out["effective_from"] = cfg.get("effective_from")
    out["note"] = cfg.get("note")
    return out


def _periods_from_rows(configs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # without an activation history, each row's own window is its only period
    return [
        {"config_id": c.get("id"), "activated_at": c.get("activated_at"), "deactivated_at": c.get("deactivated_at")}
        for c in configs
    ]


def _as_aware(at: datetime) -> datetime:
    # naive instants (e.g. "?at=2026-06-01T00:00:00") are read as UTC
    if at.tzinfo is None:
        return at.replace(tzinfo=timezone.utc)
    return at


def _in_force_at(cfg: Dict[str, Any], periods: List[Dict[str, Any]], at: datetime) -> bool:
    effective_from = cfg.get("effective_from")
    if effective_from is not None and effective_from > at:
        return False
    for period in periods:
        if period["config_id"] != cfg.get("id"):
            continue
        activated_at = period.get("activated_at")
        deactivated_at = period.get("deactivated_at")
        if activated_at is None or activated_at > at:
            continue
        if deactivated_at is not None and deactivated_at <= at:
            continue
        return True
    return False


def select_active_config(
    configs: Iterable[Dict[str, Any]],
    at: Optional[datetime] = None,
    activations: Optional[Iterable[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    pick the single config that governs pricing.

    - at is None: the active config with the most recent effective_from
    - at given: the config that was in force at that instant (historical replay)

    activations: [{config_id, activated_at, deactivated_at}], one row per
    period a config was active. a config activated twice has two periods.
    when omitted, each config's own activated_at / deactivated_at is used.

    fails closed with ConfigurationMissing, never falls back to defaults.
    """
    configs = list(configs)
    if at is None:
        candidates = [c for c in configs if c.get("active")]
    else:
        at = _as_aware(at)
        periods = list(activations) if activations is not None else _periods_from_rows(configs)
        candidates = [c for c in configs if _in_force_at(c, periods, at)]

    if not candidates:
        raise ConfigurationMissing("No active commission config")

    return max(candidates, key=lambda c: (c.get("effective_from") or _EPOCH, c.get("id") or 0))
