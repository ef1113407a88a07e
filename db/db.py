from contextlib import contextmanager
from pathlib import Path

import psycopg

from config import settings

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn():
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(settings.DATABASE_URL) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(conn: psycopg.Connection) -> None:
    """create tables / indexes if missing (idempotent)."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_PATH.read_text())
