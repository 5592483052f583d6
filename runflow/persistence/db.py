from __future__ import annotations

from typing import Any, Sequence

import psycopg
from psycopg.rows import dict_row


async def get_conn(conninfo: str) -> psycopg.AsyncConnection:
    """
    Short-lived connection per transaction.
    For higher throughput we can add a pool later.
    """
    return await psycopg.AsyncConnection.connect(conninfo, row_factory=dict_row)


async def exec_sql(conn: psycopg.AsyncConnection, sql: Any, params: Sequence[Any] | None = None) -> None:
    async with conn.cursor() as cur:
        await cur.execute(sql, params)


async def fetch_all(conn: psycopg.AsyncConnection, sql: Any, params: Sequence[Any] | None = None) -> list[dict]:
    async with conn.cursor() as cur:
        await cur.execute(sql, params)
        rows = await cur.fetchall()
    return list(rows)


async def fetch_one(conn: psycopg.AsyncConnection, sql: Any, params: Sequence[Any] | None = None) -> dict | None:
    async with conn.cursor() as cur:
        await cur.execute(sql, params)
        row = await cur.fetchone()
    return row
