import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import Connection

from commission_config import select_active_config, validate_commission_config
from db.db import get_conn
from db.repositories import (
    config_referenced_by_orders,
    deactivate_active_configs,
    delete_commission_config_row,
    fetch_active_commission_config,
    fetch_commission_configs,
    fetch_config_activations,
    get_commission_config,
    insert_commission_config,
    insert_config_activation,
    lock_commission_configs,
    mark_config_active,
)
from errors import CommissionConfigInUse, CommissionConfigNotFound, ConfigurationMissing

logger = logging.getLogger(__name__)


def resolve_active_config(conn: Connection, at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    in-transaction variant used by the purchase orchestrator.
    at=None reads the live active row, at=<ts> replays history.
    """
    if at is None:
        config = fetch_active_commission_config(conn)
        if config is None:
            raise ConfigurationMissing("No active commission config")
        return config
    return select_active_config(
        fetch_commission_configs(conn),
        at=at,
        activations=fetch_config_activations(conn),
    )


def get_active_commission_config(at: Optional[datetime] = None) -> Dict[str, Any]:
    with get_conn() as conn:
        return resolve_active_config(conn, at=at)


def list_commission_configs() -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return fetch_commission_configs(conn)


def create_commission_config(cfg: Dict[str, Any], activate: bool = True) -> Dict[str, Any]:
    """
    insert a new config version. with activate=True every previously active
    config is deactivated in the same transaction, under a table lock, so
    readers never see zero or two active rows.
    """
    normalized = validate_commission_config(cfg)

    with get_conn() as conn:
        try:
            if activate:
                lock_commission_configs(conn)
                superseded = deactivate_active_configs(conn)
            config = insert_commission_config(conn, normalized, active=activate)
            if activate:
                insert_config_activation(conn, config["id"])
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    if activate:
        logger.info(f"Commission config {config['id']} activated (superseded {superseded})")
    else:
        logger.info(f"Commission config {config['id']} created as draft")
    return config


def activate_commission_config(config_id: int) -> Dict[str, Any]:
    """make an existing (draft or superseded) config the single active one."""
    with get_conn() as conn:
        try:
            lock_commission_configs(conn)
            if get_commission_config(conn, config_id) is None:
                raise CommissionConfigNotFound(f"Commission config {config_id} not found")
            deactivate_active_configs(conn)
            config = mark_config_active(conn, config_id)
            insert_config_activation(conn, config_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Commission config {config_id} activated")
    return config


def delete_commission_config(config_id: int) -> None:
    """
    drafts only: active configs, and configs any order was priced with,
    are kept for audit.
    """
    with get_conn() as conn:
        try:
            lock_commission_configs(conn)
            config = get_commission_config(conn, config_id)
            if config is None:
                raise CommissionConfigNotFound(f"Commission config {config_id} not found")
            if config["active"]:
                raise CommissionConfigInUse("Cannot delete active commission config")
            if config_referenced_by_orders(conn, config_id):
                raise CommissionConfigInUse("Commission config is referenced by existing orders")
            delete_commission_config_row(conn, config_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Commission config {config_id} deleted")
