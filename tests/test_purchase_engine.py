from datetime import datetime, timezone
from decimal import Decimal

import pytest

from errors import ConfigurationMissing, InsufficientFunds, ProductNotFound, ProductNotPriced
from purchase_engine import TREASURY_USER_ID, handle_purchase


def _make_base_structures():
    """helper to create fresh in-memory 'tables' for each test."""
    users = {
        "A": {"id": "A", "role": "admin", "parent_id": None},
        "D": {"id": "D", "role": "distributor", "parent_id": "A"},
        "B": {"id": "B", "role": "branch", "parent_id": "D"},
        "C": {"id": "C", "role": "customer", "parent_id": "B"},
        "X": {"id": "X", "role": "customer", "parent_id": None},
    }
    products = {
        "P1": {"id": "P1", "base_price": 10000},
        "UNPRICED": {"id": "UNPRICED", "base_price": None},
    }
    configs = [
        {
            "id": 1,
            "company_share": Decimal("0.05"),
            "distributor_share": Decimal("0.03"),
            "branch_share": Decimal("0.02"),
            "customer_point_rate": Decimal("0.01"),
            "active": True,
            "effective_from": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
    ]
    wallets = {}
    journal = []
    orders = []
    return users, products, configs, wallets, journal, orders


def test_full_hierarchy_purchase_distribution():
    """
    C (under B under D) buys a 100.00 product with 5/3/2 % commissions.
    expect:
      - C: -110
      - TREASURY: +5, D: +3, B: +2
    """
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["C"] = {"balance": 20000, "loyalty_points": 0}

    result = handle_purchase("C", "P1", users, products, configs, wallets, journal, orders)

    assert result["final_price"] == 11000
    assert result["loyalty_points_earned"] == 1

    assert wallets["C"]["balance"] == 9000
    assert wallets["C"]["loyalty_points"] == 1
    assert wallets[TREASURY_USER_ID]["balance"] == 500
    assert wallets["D"]["balance"] == 300
    assert wallets["B"]["balance"] == 200

    # buyer debit == base + every commission
    order = orders[0]
    assert order["final_price_paid"] == (
        order["base_rate"]
        + order["company_commission"]
        + order["distributor_commission"]
        + order["branch_commission"]
    )
    assert order["status"] == "paid"
    assert order["commission_config_id"] == 1

    credits = sum(e["amount"] for e in journal if e["direction"] == "credit")
    debits = sum(e["amount"] for e in journal if e["direction"] == "debit")
    assert debits == credits + order["base_rate"]

    # one debit + three commission credits
    assert len(journal) == 4


def test_direct_sale_only_credits_treasury():
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["X"] = {"balance": 20000, "loyalty_points": 0}

    result = handle_purchase("X", "P1", users, products, configs, wallets, journal, orders)

    assert result["final_price"] == 10500
    assert result["attribution"]["direct_sale"] is True
    assert wallets["X"]["balance"] == 9500
    assert wallets[TREASURY_USER_ID]["balance"] == 500
    assert "D" not in wallets
    assert "B" not in wallets


def test_insufficient_funds_changes_nothing():
    """
    balance 50.00, price 110.00 -> InsufficientFunds, no mutation anywhere.
    """
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["C"] = {"balance": 5000, "loyalty_points": 0}

    with pytest.raises(InsufficientFunds):
        handle_purchase("C", "P1", users, products, configs, wallets, journal, orders)

    assert wallets == {"C": {"balance": 5000, "loyalty_points": 0}}
    assert journal == []
    assert orders == []


def test_buyer_without_wallet_is_insufficient():
    users, products, configs, wallets, journal, orders = _make_base_structures()

    with pytest.raises(InsufficientFunds):
        handle_purchase("C", "P1", users, products, configs, wallets, journal, orders)

    assert wallets == {}


def test_missing_config_aborts_before_any_mutation():
    users, products, _, wallets, journal, orders = _make_base_structures()
    wallets["C"] = {"balance": 20000, "loyalty_points": 0}

    with pytest.raises(ConfigurationMissing):
        handle_purchase("C", "P1", users, products, [], wallets, journal, orders)

    assert wallets["C"]["balance"] == 20000
    assert orders == []


def test_unknown_and_unpriced_products():
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["C"] = {"balance": 20000, "loyalty_points": 0}

    with pytest.raises(ProductNotFound):
        handle_purchase("C", "NOPE", users, products, configs, wallets, journal, orders)

    with pytest.raises(ProductNotPriced):
        handle_purchase("C", "UNPRICED", users, products, configs, wallets, journal, orders)

    assert journal == []


def test_no_treasury_means_company_commission_unpaid():
    """buyer still pays the full price, the company share just isn't credited."""
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["X"] = {"balance": 20000, "loyalty_points": 0}

    handle_purchase("X", "P1", users, products, configs, wallets, journal, orders, treasury_id=None)

    assert wallets["X"]["balance"] == 9500
    assert list(wallets) == ["X"]
    assert len(journal) == 1


def test_journal_snapshots_replay_cleanly():
    """
    two purchases in a row: each entry's balance_before is the previous
    balance_after for that wallet.
    """
    users, products, configs, wallets, journal, orders = _make_base_structures()
    wallets["C"] = {"balance": 30000, "loyalty_points": 0}

    handle_purchase("C", "P1", users, products, configs, wallets, journal, orders)
    handle_purchase("C", "P1", users, products, configs, wallets, journal, orders)

    running = {"C": 30000}
    for entry in journal:
        before = running.get(entry["user_id"], 0)
        assert entry["balance_before"] == before
        signed = entry["amount"] if entry["direction"] == "credit" else -entry["amount"]
        assert entry["balance_after"] == before + signed
        running[entry["user_id"]] = entry["balance_after"]

    assert running["C"] == wallets["C"]["balance"] == 8000
    assert [o["id"] for o in orders] == [1, 2]
