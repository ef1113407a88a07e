from datetime import timedelta, timezone
from decimal import Decimal

import pytest

from commission_config_db import (
    activate_commission_config,
    create_commission_config,
    delete_commission_config,
    get_active_commission_config,
    list_commission_configs,
)
from errors import CommissionConfigInUse, CommissionConfigNotFound, ConfigurationMissing, InvalidCommissionConfig
from purchase_db import create_purchase

RATES = {
    "company_share": "0.05",
    "distributor_share": "0.03",
    "branch_share": "0.02",
    "customer_point_rate": "0.01",
}


def _rates(**override):
    cfg = dict(RATES)
    cfg.update(override)
    return cfg


def test_no_config_fails_closed(db):
    with pytest.raises(ConfigurationMissing):
        get_active_commission_config()


def test_new_config_supersedes_previous(db):
    first = create_commission_config(_rates())
    second = create_commission_config(_rates(company_share="0.07"))

    active = get_active_commission_config()
    assert active["id"] == second["id"]
    assert active["company_share"] == Decimal("0.07")

    configs = {c["id"]: c for c in list_commission_configs()}
    assert [c["id"] for c in configs.values() if c["active"]] == [second["id"]]
    assert configs[first["id"]]["deactivated_at"] is not None


def test_draft_then_activate(db):
    live = create_commission_config(_rates())
    draft = create_commission_config(_rates(branch_share="0.04", note="pilot"), activate=False)

    assert draft["active"] is False
    assert draft["activated_at"] is None
    assert get_active_commission_config()["id"] == live["id"]

    activated = activate_commission_config(draft["id"])

    assert activated["active"] is True
    assert get_active_commission_config()["id"] == draft["id"]
    assert get_active_commission_config()["branch_share"] == Decimal("0.04")

    with pytest.raises(CommissionConfigNotFound):
        activate_commission_config(999999)


def test_invalid_config_is_not_stored(db):
    with pytest.raises(InvalidCommissionConfig):
        create_commission_config(_rates(company_share="1.2"))

    assert list_commission_configs() == []


def test_delete_rules(hierarchy, make_product, fund):
    used = create_commission_config(_rates())
    fund(hierarchy["customer"], 20000)
    create_purchase(hierarchy["customer"], make_product())

    # active
    with pytest.raises(CommissionConfigInUse):
        delete_commission_config(used["id"])

    # superseded but referenced by an order
    create_commission_config(_rates(company_share="0.06"))
    with pytest.raises(CommissionConfigInUse):
        delete_commission_config(used["id"])

    draft = create_commission_config(_rates(), activate=False)
    delete_commission_config(draft["id"])
    assert draft["id"] not in [c["id"] for c in list_commission_configs()]

    with pytest.raises(CommissionConfigNotFound):
        delete_commission_config(draft["id"])


def test_historical_lookup(db):
    """the config in force at a past instant, not today's."""
    first = create_commission_config(_rates())
    second = create_commission_config(_rates(company_share="0.08"))

    assert get_active_commission_config(at=first["activated_at"])["id"] == first["id"]
    assert get_active_commission_config(at=second["activated_at"])["id"] == second["id"]

    with pytest.raises(ConfigurationMissing):
        get_active_commission_config(at=first["created_at"].replace(year=2000))


def test_rates_are_applied_to_new_purchases(hierarchy, make_product, fund):
    create_commission_config(_rates())
    product = make_product(base_price_minor=10000)
    fund(hierarchy["customer"], 50000)

    first = create_purchase(hierarchy["customer"], product)
    create_commission_config(_rates(company_share="0.10"))
    second = create_purchase(hierarchy["customer"], product)

    assert first["final_price"] == 11000
    assert second["final_price"] == 11500
    assert first["commission_config_id"] != second["commission_config_id"]


def test_reactivation_keeps_earlier_periods(db):
    """
    A active, then B, then A again. the instant A was first in force must
    still resolve to A, and B's window to B.
    """
    first = create_commission_config(_rates())
    second = create_commission_config(_rates(company_share="0.08"))

    activate_commission_config(first["id"])

    assert get_active_commission_config()["id"] == first["id"]
    assert get_active_commission_config(at=first["activated_at"])["id"] == first["id"]
    assert get_active_commission_config(at=second["activated_at"])["id"] == second["id"]


def test_historical_lookup_accepts_naive_instant(db):
    """naive timestamps (no offset in the query string) are read as UTC."""
    config = create_commission_config(_rates())
    naive = config["activated_at"].astimezone(timezone.utc).replace(tzinfo=None) + timedelta(seconds=1)

    assert get_active_commission_config(at=naive)["id"] == config["id"]
