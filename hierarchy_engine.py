from typing import Any, Callable, Dict, Optional

from errors import CustomerNotFound

BRANCH_ROLE = "branch"
DISTRIBUTOR_ROLE = "distributor"

PrincipalLookup = Callable[[Any], Optional[Dict[str, Any]]]


def resolve_attribution(customer_id, get_principal: PrincipalLookup) -> Dict[str, Any]:
    """
    given a customer_id, work out who the sale is attributed to.

    get_principal: callable id -> {"id", "role", "parent_id"} or None.
      in memory this is just `users.get`, in the DB path it's
      repositories.get_principal bound to a connection.

    walk is a fixed two hops: customer -> branch -> distributor.
    rules:
      - parent must have role "branch" to count as the branch
      - branch's parent must have role "distributor" to count as the distributor
      - any missing link / wrong role just truncates the chain (no error),
        that's a company direct sale
    returns {"branch_id", "distributor_id", "direct_sale"}.
    """
    customer = get_principal(customer_id)
    if customer is None:
        raise CustomerNotFound(f"Customer {customer_id} not found")

    branch_id = None
    distributor_id = None

    # 1) customer's parent must be a branch
    parent_id = customer.get("parent_id")
    if parent_id is not None:
        branch = get_principal(parent_id)
        if branch is not None and branch.get("role") == BRANCH_ROLE:
            branch_id = branch["id"]

            # 2) branch's parent must be a distributor
            grandparent_id = branch.get("parent_id")
            if grandparent_id is not None:
                distributor = get_principal(grandparent_id)
                if distributor is not None and distributor.get("role") == DISTRIBUTOR_ROLE:
                    distributor_id = distributor["id"]

    return {
        "branch_id": branch_id,
        "distributor_id": distributor_id,
        "direct_sale": branch_id is None and distributor_id is None,
    }
