import threading

import pytest

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
from errors import (
    CustomerNotFound,
    InsufficientBalance,
    InvalidAmount,
    InvalidRequest,
    NotAuthorized,
    RequestAlreadyProcessed,
    RequestNotFound,
)
from wallet_db import get_wallet_snapshot, verify_wallet_ledger


@pytest.fixture
def people(make_user):
    admin = make_user("admin", role="admin")
    customer = make_user("cust")
    return {"admin": admin, "customer": customer}


def _balance(user_id):
    return get_wallet_snapshot(user_id)["balance"]


def test_deposit_approval_credits_once(people, count_rows):
    request = request_deposit(people["customer"], 25000, "UTR-1001", proof="receipt.png")
    assert request["status"] == "pending"
    assert request["requested_by"] == people["customer"]
    assert [r["id"] for r in list_pending_deposits()] == [request["id"]]

    approved = approve_deposit(request["id"], people["admin"])

    assert approved["status"] == "approved"
    assert approved["processed_by"] == people["admin"]
    assert _balance(people["customer"]) == 25000
    assert list_pending_deposits() == []

    with pytest.raises(RequestAlreadyProcessed):
        approve_deposit(request["id"], people["admin"])
    with pytest.raises(RequestAlreadyProcessed):
        reject_deposit(request["id"], people["admin"])

    assert _balance(people["customer"]) == 25000
    assert count_rows("transactions") == 1


def test_deposit_filed_by_branch_for_customer(people, make_user):
    branch = make_user("branch", role="branch")
    request = request_deposit(people["customer"], 1000, "UTR-2", requested_by=branch)

    assert request["user_id"] == people["customer"]
    assert request["requested_by"] == branch


def test_deposit_rejection_moves_no_money(people, count_rows):
    request = request_deposit(people["customer"], 25000, "UTR-1002")

    rejected = reject_deposit(request["id"], people["admin"])

    assert rejected["status"] == "rejected"
    assert _balance(people["customer"]) == 0
    assert count_rows("transactions") == 0


def test_only_admin_can_process(people):
    request = request_deposit(people["customer"], 1000, "UTR-3")

    with pytest.raises(NotAuthorized):
        approve_deposit(request["id"], people["customer"])
    with pytest.raises(NotAuthorized):
        reject_deposit(request["id"], 999999)

    assert _balance(people["customer"]) == 0


def test_unknown_request(people):
    with pytest.raises(RequestNotFound):
        approve_deposit(999999, people["admin"])
    with pytest.raises(RequestNotFound):
        approve_withdrawal(999999, people["admin"])


def test_request_validation(people):
    with pytest.raises(InvalidAmount):
        request_deposit(people["customer"], 0, "UTR-4")
    with pytest.raises(InvalidAmount):
        request_withdrawal(people["customer"], -100, "HDFC 0001")
    with pytest.raises(InvalidRequest):
        request_deposit(people["customer"], 1000, "   ")
    with pytest.raises(InvalidRequest):
        request_withdrawal(people["customer"], 1000, "")
    with pytest.raises(CustomerNotFound):
        request_deposit(999999, 1000, "UTR-5")


def test_concurrent_deposit_approvals_credit_once(people):
    """two admins click approve at the same time: exactly one credit."""
    request = request_deposit(people["customer"], 25000, "UTR-RACE")

    barrier = threading.Barrier(2)
    outcomes = []

    def approve():
        barrier.wait()
        try:
            approve_deposit(request["id"], people["admin"])
            outcomes.append("approved")
        except RequestAlreadyProcessed:
            outcomes.append("already")

    threads = [threading.Thread(target=approve) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["already", "approved"]
    assert _balance(people["customer"]) == 25000


def test_withdrawal_approval_debits(people, fund):
    fund(people["customer"], 30000)
    request = request_withdrawal(people["customer"], 20000, "HDFC 0001 / IFSC HDFC0000001")

    approved = approve_withdrawal(request["id"], people["admin"])

    assert approved["status"] == "approved"
    assert _balance(people["customer"]) == 10000
    assert verify_wallet_ledger(people["customer"])["ok"]

    snapshot = get_wallet_snapshot(people["customer"])
    assert snapshot["recent_transactions"][0]["category"] == "withdrawal"
    assert snapshot["recent_transactions"][0]["reference_id"] == f"withdrawal:{request['id']}"


def test_withdrawal_request_needs_balance(people, fund):
    fund(people["customer"], 1000)

    with pytest.raises(InsufficientBalance):
        request_withdrawal(people["customer"], 5000, "HDFC 0001")

    assert list_withdrawal_requests(people["customer"]) == []


def test_withdrawal_balance_rechecked_at_approval(people, fund):
    """
    balance was enough when the request was filed but has since dropped:
    approval fails and the request stays pending.
    """
    fund(people["customer"], 10000)
    first = request_withdrawal(people["customer"], 8000, "HDFC 0001")
    second = request_withdrawal(people["customer"], 8000, "HDFC 0001")

    approve_withdrawal(first["id"], people["admin"])
    with pytest.raises(InsufficientBalance):
        approve_withdrawal(second["id"], people["admin"])

    assert _balance(people["customer"]) == 2000
    statuses = {r["id"]: r["status"] for r in list_withdrawal_requests(people["customer"])}
    assert statuses == {first["id"]: "approved", second["id"]: "pending"}


def test_withdrawal_rejection_keeps_note(people, fund):
    fund(people["customer"], 10000)
    request = request_withdrawal(people["customer"], 5000, "HDFC 0001")

    rejected = reject_withdrawal(request["id"], people["admin"], note="account name mismatch")

    assert rejected["status"] == "rejected"
    assert rejected["admin_note"] == "account name mismatch"
    assert _balance(people["customer"]) == 10000

    with pytest.raises(RequestAlreadyProcessed):
        approve_withdrawal(request["id"], people["admin"])
