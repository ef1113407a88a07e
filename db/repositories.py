from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import Connection, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


# ---------
# principals / products
# ---------

def get_principal(conn: Connection, user_id: int) -> Optional[Dict[str, Any]]:
    """
    fetch {id, username, role, parent_id, status} for a user, or None.
    this is the lookup hierarchy_engine.resolve_attribution walks with.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT id, username, role, parent_id, status FROM users WHERE id = %s",
            (user_id,),
        )
        return cur.fetchone()


def activate_user_if_pending(conn: Connection, user_id: int) -> bool:
    """pending -> active (first funded deposit). returns True if it flipped."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users SET status = 'active', updated_at = NOW()
            WHERE id = %s AND status = 'pending'
            """,
            (user_id,),
        )
        return cur.rowcount == 1


def get_product(conn: Connection, product_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT id, name, base_price_minor, active FROM products WHERE id = %s",
            (product_id,),
        )
        return cur.fetchone()


# ---------
# wallets / ledger
# ---------

def lock_wallets(
    conn: Connection,
    user_ids: Iterable[int],
    currency: str,
) -> Dict[int, Dict[str, Any]]:
    """
    create any missing wallets, then lock all of them with SELECT ... FOR UPDATE.

    ids are sorted so every caller takes row locks in the same order, two
    purchases touching the same wallets can't deadlock each other.
    This MUST be called inside the transaction that mutates the wallets.
    """
    ids = sorted(set(user_ids))
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO wallets (user_id, currency)
            SELECT uid, %s FROM unnest(%s::bigint[]) AS uid
            ON CONFLICT (user_id) DO NOTHING
            """,
            (currency, ids),
        )
        cur.execute(
            """
            SELECT id, user_id, balance_minor, loyalty_points, currency
            FROM wallets
            WHERE user_id = ANY(%s)
            ORDER BY user_id
            FOR UPDATE
            """,
            (ids,),
        )
        rows = cur.fetchall()
    return {row["user_id"]: row for row in rows}


def get_wallet(conn: Connection, user_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, user_id, balance_minor, loyalty_points, currency, updated_at
            FROM wallets WHERE user_id = %s
            """,
            (user_id,),
        )
        return cur.fetchone()


def apply_wallet_delta(
    conn: Connection,
    wallet: Dict[str, Any],
    direction: str,
    amount_minor: int,
    category: str,
    description: str,
    reference_id: Optional[str],
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    move money in/out of a (locked) wallet and append the matching ledger row.

    the wallet dict is updated in place so later steps in the same
    transaction see the new balance. returns the transaction row.
    """
    signed = amount_minor if direction == "credit" else -amount_minor

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            UPDATE wallets
            SET balance_minor = balance_minor + %s, updated_at = NOW()
            WHERE id = %s
            RETURNING balance_minor
            """,
            (signed, wallet["id"]),
        )
        balance_after = cur.fetchone()["balance_minor"]
        balance_before = balance_after - signed

        cur.execute(
            """
            INSERT INTO transactions
                (wallet_id, user_id, amount_minor, direction, category, description,
                 reference_id, balance_before_minor, balance_after_minor, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, wallet_id, user_id, amount_minor, direction, category,
                      reference_id, balance_before_minor, balance_after_minor, created_at
            """,
            (
                wallet["id"],
                wallet["user_id"],
                amount_minor,
                direction,
                category,
                description,
                reference_id,
                balance_before,
                balance_after,
                Jsonb(meta) if meta is not None else None,
            ),
        )
        tx = cur.fetchone()

    wallet["balance_minor"] = balance_after
    return tx


def add_loyalty_points(conn: Connection, wallet_id: int, points: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE wallets
            SET loyalty_points = loyalty_points + %s, updated_at = NOW()
            WHERE id = %s
            """,
            (points, wallet_id),
        )


def find_transaction_by_reference(conn: Connection, reference_id: str, category: str) -> Optional[int]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM transactions WHERE reference_id = %s AND category = %s LIMIT 1",
            (reference_id, category),
        )
        row = cur.fetchone()
        return row[0] if row else None


def get_recent_transactions(conn: Connection, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, amount_minor, direction, category, description, reference_id,
                   balance_before_minor, balance_after_minor, meta, created_at
            FROM transactions
            WHERE user_id = %s
            ORDER BY id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return cur.fetchall()


def get_wallet_transactions_in_order(conn: Connection, wallet_id: int) -> List[Dict[str, Any]]:
    """
    oldest first, the order a replay has to apply them in. ids are drawn while
    the wallet row is locked, so per wallet they follow the real write order.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, amount_minor, direction, balance_before_minor, balance_after_minor
            FROM transactions
            WHERE wallet_id = %s
            ORDER BY id
            """,
            (wallet_id,),
        )
        return cur.fetchall()


def ensure_gateway_payment(
    conn: Connection,
    payment_id: str,
    user_id: int,
    amount_minor: int,
) -> bool:
    """
    insert the gateway payment id if not already present (idempotent).
    returns True if this call created it, False if it was already there.

    uses the unique constraint on payment_id; a concurrent delivery of the
    same payment blocks here until the first one commits or rolls back.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO gateway_payments (payment_id, user_id, amount_minor)
            VALUES (%s, %s, %s)
            ON CONFLICT (payment_id) DO NOTHING
            RETURNING id
            """,
            (payment_id, user_id, amount_minor),
        )
        return cur.fetchone() is not None


# ---------
# orders
# ---------

ORDER_COLUMNS = """
    id, customer_id, product_id, distributor_id, branch_id, commission_config_id,
    base_rate_minor, company_commission_minor, distributor_commission_minor,
    branch_commission_minor, final_price_minor, currency, status,
    loyalty_points_earned, payment_meta, tracking_number, estimated_delivery,
    cancel_reason, cancelled_at, delivered_at, created_at, updated_at
"""


def insert_order(
    conn: Connection,
    customer_id: int,
    product_id: int,
    attribution: Dict[str, Any],
    pricing: Dict[str, int],
    commission_config_id: int,
    currency: str,
) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO orders
                (customer_id, product_id, distributor_id, branch_id, commission_config_id,
                 base_rate_minor, company_commission_minor, distributor_commission_minor,
                 branch_commission_minor, final_price_minor, currency, status, payment_meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'paid', %s)
            RETURNING {ORDER_COLUMNS}
            """,
            (
                customer_id,
                product_id,
                attribution["distributor_id"],
                attribution["branch_id"],
                commission_config_id,
                pricing["base_rate"],
                pricing["company_commission"],
                pricing["distributor_commission"],
                pricing["branch_commission"],
                pricing["final_price"],
                currency,
                Jsonb({"method": "wallet"}),
            ),
        )
        return cur.fetchone()


def get_order(conn: Connection, order_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    query = f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (order_id,))
        return cur.fetchone()


def update_order_fields(conn: Connection, order_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    set the given columns on an order and return the updated row.
    column names come from our own code, never from request input.
    """
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder()) for name in fields
    )
    query = sql.SQL(
        "UPDATE orders SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING {columns}"
    ).format(assignments=assignments, columns=sql.SQL(ORDER_COLUMNS))
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (*fields.values(), order_id))
        return cur.fetchone()


def insert_commission_entry(
    conn: Connection,
    order_id: int,
    transaction_id: int,
    beneficiary_user_id: int,
    kind: str,
    amount_minor: int,
    share,
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO commission_ledger
                (order_id, transaction_id, beneficiary_user_id, kind, amount_minor, share)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (order_id, transaction_id, beneficiary_user_id, kind, amount_minor, share),
        )


# ---------
# commission configs
# ---------

CONFIG_COLUMNS = """
    id, company_share, distributor_share, branch_share, customer_point_rate,
    tiers, active, effective_from, activated_at, deactivated_at, note, created_at
"""


def fetch_active_commission_config(conn: Connection) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {CONFIG_COLUMNS} FROM commission_configs
            WHERE active
            ORDER BY effective_from DESC
            LIMIT 1
            """
        )
        return cur.fetchone()


def fetch_commission_configs(conn: Connection) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {CONFIG_COLUMNS} FROM commission_configs ORDER BY created_at DESC, id DESC")
        return cur.fetchall()


def get_commission_config(conn: Connection, config_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {CONFIG_COLUMNS} FROM commission_configs WHERE id = %s", (config_id,))
        return cur.fetchone()


def lock_commission_configs(conn: Connection) -> None:
    """
    serialize writers of the active flag. SHARE ROW EXCLUSIVE conflicts with
    itself but not with plain SELECTs, so pricing reads never wait on it.
    """
    with conn.cursor() as cur:
        cur.execute("LOCK TABLE commission_configs IN SHARE ROW EXCLUSIVE MODE")


def deactivate_active_configs(conn: Connection) -> int:
    """clear the active flag and close the open activation period."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_configs
            SET active = FALSE, deactivated_at = NOW()
            WHERE active
            """
        )
        deactivated = cur.rowcount
        cur.execute(
            """
            UPDATE commission_config_activations
            SET deactivated_at = NOW()
            WHERE deactivated_at IS NULL
            """
        )
        return deactivated


def insert_config_activation(conn: Connection, config_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "INSERT INTO commission_config_activations (config_id, activated_at) VALUES (%s, NOW())",
            (config_id,),
        )


def fetch_config_activations(conn: Connection) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT config_id, activated_at, deactivated_at
            FROM commission_config_activations
            ORDER BY activated_at, id
            """
        )
        return cur.fetchall()


def insert_commission_config(conn: Connection, cfg: Dict[str, Any], active: bool) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO commission_configs
                (company_share, distributor_share, branch_share, customer_point_rate,
                 tiers, active, effective_from, activated_at, note)
            VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()),
                    CASE WHEN %s THEN NOW() END, %s)
            RETURNING {CONFIG_COLUMNS}
            """,
            (
                cfg["company_share"],
                cfg["distributor_share"],
                cfg["branch_share"],
                cfg["customer_point_rate"],
                Jsonb(cfg.get("tiers") or []),
                active,
                cfg.get("effective_from"),
                active,
                cfg.get("note"),
            ),
        )
        return cur.fetchone()


def mark_config_active(conn: Connection, config_id: int) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE commission_configs
            SET active = TRUE, activated_at = NOW(), deactivated_at = NULL
            WHERE id = %s
            RETURNING {CONFIG_COLUMNS}
            """,
            (config_id,),
        )
        return cur.fetchone()


def config_referenced_by_orders(conn: Connection, config_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM orders WHERE commission_config_id = %s LIMIT 1", (config_id,))
        return cur.fetchone() is not None


def delete_commission_config_row(conn: Connection, config_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM commission_configs WHERE id = %s", (config_id,))


# ---------
# deposit / withdrawal requests
# ---------

REQUEST_TABLES = ("deposit_requests", "withdrawal_requests")


def insert_deposit_request(
    conn: Connection,
    user_id: int,
    amount_minor: int,
    external_txn_id: str,
    proof: Optional[str],
    requested_by: Optional[int],
) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO deposit_requests (user_id, amount_minor, external_txn_id, proof, requested_by)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, user_id, amount_minor, external_txn_id, status, requested_by, created_at
            """,
            (user_id, amount_minor, external_txn_id, proof, requested_by),
        )
        return cur.fetchone()


def insert_withdrawal_request(
    conn: Connection,
    user_id: int,
    amount_minor: int,
    bank_details: str,
) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO withdrawal_requests (user_id, amount_minor, bank_details)
            VALUES (%s, %s, %s)
            RETURNING id, user_id, amount_minor, bank_details, status, created_at
            """,
            (user_id, amount_minor, bank_details),
        )
        return cur.fetchone()


def get_request_for_update(conn: Connection, table: str, request_id: int) -> Optional[Dict[str, Any]]:
    """
    lock a deposit/withdrawal request row. two admins clicking approve at the
    same time queue up here, the second one then sees status != 'pending'.
    """
    if table not in REQUEST_TABLES:
        raise ValueError(f"unknown request table {table}")
    query = sql.SQL("SELECT * FROM {} WHERE id = %s FOR UPDATE").format(sql.Identifier(table))
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (request_id,))
        return cur.fetchone()


def mark_request_processed(
    conn: Connection,
    table: str,
    request_id: int,
    status: str,
    processed_by: int,
    admin_note: Optional[str] = None,
) -> Dict[str, Any]:
    if table not in REQUEST_TABLES:
        raise ValueError(f"unknown request table {table}")
    extra = sql.SQL("")
    params: List[Any] = [status, processed_by]
    if table == "withdrawal_requests":
        extra = sql.SQL(", admin_note = COALESCE(%s, admin_note)")
        params.append(admin_note)
    params.append(request_id)
    query = sql.SQL(
        "UPDATE {} SET status = %s, processed_by = %s, processed_at = NOW(){} WHERE id = %s RETURNING *"
    ).format(sql.Identifier(table), extra)
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, params)
        return cur.fetchone()


def list_withdrawal_requests(conn: Connection, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        if user_id is None:
            cur.execute("SELECT * FROM withdrawal_requests ORDER BY created_at DESC, id DESC")
        else:
            cur.execute(
                "SELECT * FROM withdrawal_requests WHERE user_id = %s ORDER BY created_at DESC, id DESC",
                (user_id,),
            )
        return cur.fetchall()


def list_pending_deposits(conn: Connection) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, user_id, amount_minor, external_txn_id, status, requested_by, created_at
            FROM deposit_requests
            WHERE status = 'pending'
            ORDER BY created_at DESC, id DESC
            """
        )
        return cur.fetchall()


# ---------
# earnings
# ---------

def get_commission_totals(
    conn: Connection,
    user_id: int,
    from_datetime: Optional[datetime] = None,
    to_datetime: Optional[datetime] = None,
) -> Dict[str, int]:
    """sum of commission_ledger amounts per kind, optionally within [from, to)."""
    params: List[Any] = [user_id]
    where_clauses = ["beneficiary_user_id = %s"]
    if from_datetime is not None:
        where_clauses.append("created_at >= %s")
        params.append(from_datetime)
    if to_datetime is not None:
        where_clauses.append("created_at < %s")
        params.append(to_datetime)
    where_sql = " AND ".join(where_clauses)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT kind, COALESCE(SUM(amount_minor), 0)
            FROM commission_ledger
            WHERE {where_sql}
            GROUP BY kind
            """,
            tuple(params),
        )
        return {kind: int(total) for kind, total in cur.fetchall()}


def get_attributed_sales(conn: Connection, user_id: int) -> Dict[str, int]:
    """orders routed through this user as distributor or branch (cancelled excluded)."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COUNT(*), COALESCE(SUM(final_price_minor), 0)
            FROM orders
            WHERE (distributor_id = %s OR branch_id = %s)
              AND status <> 'cancelled'
            """,
            (user_id, user_id),
        )
        count, total = cur.fetchone()
    return {"order_count": int(count), "total_sales": int(total)}


def get_approved_withdrawals_total(conn: Connection, user_id: int) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COALESCE(SUM(amount_minor), 0)
            FROM withdrawal_requests
            WHERE user_id = %s AND status = 'approved'
            """,
            (user_id,),
        )
        return int(cur.fetchone()[0])
