"""psycopg3 helpers shared by the PostgreSQL identity store and the CLI scripts.

Rows come back as dicts so :class:`~userlens.identity.store.PostgresIdentityStore`
can rebuild identities, presences and raw records by column name.
"""

import psycopg
from psycopg.rows import dict_row

from userlens.config import Settings


def get_connection(settings: Settings | None = None) -> psycopg.Connection:
    """Connect to the database named by ``UL_DATABASE_URL``.

    Raises ``ValueError`` before connecting when the URL is empty, so a
    consolidation run fails on configuration rather than mid-import.
    """
    if settings is None:
        from userlens.config import get_settings
        settings = get_settings()

    if not settings.database_url:
        msg = "UL_DATABASE_URL is not set"
        raise ValueError(msg)

    return psycopg.connect(settings.database_url, row_factory=dict_row)


def execute_query(conn: psycopg.Connection, query: str, params: tuple = ()) -> list[dict]:
    """Run one statement; identity and raw-record lookups get their rows back.

    Inserts and updates without ``RETURNING`` yield an empty list.
    """
    with conn.cursor() as cur:
        cur.execute(query, params)
        if cur.description:
            return cur.fetchall()
        return []


def execute_many(conn: psycopg.Connection, query: str, params_list: list[tuple]) -> int:
    """Run *query* once per params tuple, e.g. marking a duplicate group's raw rows merged.

    An empty batch is a no-op returning 0.
    """
    if not params_list:
        return 0
    with conn.cursor() as cur:
        cur.executemany(query, params_list)
        return cur.rowcount
