from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from runflow.persistence.base import Store, Transaction
from runflow.persistence.db import exec_sql, fetch_all, fetch_one, get_conn
from runflow.persistence.models import Assistant, Run, RunStatus, Thread
from runflow.persistence.tables import ALL_TABLES_SQL

logger = logging.getLogger(__name__)

_JSON_COLUMNS = frozenset({"metadata", "config", "values", "interrupts", "error", "kwargs"})
_THREAD_COLUMNS = frozenset({"status", "metadata", "config", "values", "interrupts", "error"})

RUN_COLUMNS = """
    run_id, thread_id, assistant_id, status, metadata, kwargs,
    multitask_strategy, created_at, updated_at
"""

THREAD_COLUMNS = """
    thread_id, status, metadata, config, "values", interrupts, error,
    created_at, updated_at
"""


def _json(value: Any) -> Optional[Jsonb]:
    return Jsonb(value) if value is not None else None


class PostgresTransaction(Transaction):
    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self._conn = conn

    async def get_assistant(self, assistant_id: str) -> Optional[Assistant]:
        return await fetch_one(
            self._conn,
            """
            SELECT assistant_id, graph_id, name, config, metadata, created_at, updated_at
            FROM assistants
            WHERE assistant_id=%s
            """,
            [assistant_id],
        )

    async def put_assistant(self, assistant: Assistant) -> Assistant:
        await exec_sql(
            self._conn,
            """
            INSERT INTO assistants (assistant_id, graph_id, name, config, metadata)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (assistant_id) DO NOTHING
            """,
            [
                assistant["assistant_id"],
                assistant["graph_id"],
                assistant.get("name") or assistant["graph_id"],
                Jsonb(assistant.get("config") or {}),
                Jsonb(assistant.get("metadata") or {}),
            ],
        )
        row = await self.get_assistant(assistant["assistant_id"])
        return row  # type: ignore[return-value]

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        return await fetch_one(
            self._conn,
            f"SELECT {THREAD_COLUMNS} FROM threads WHERE thread_id=%s",
            [thread_id],
        )

    async def insert_thread(self, thread: Thread) -> Thread:
        row = await fetch_one(
            self._conn,
            f"""
            INSERT INTO threads (thread_id, status, metadata, config, "values", interrupts, error, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {THREAD_COLUMNS}
            """,
            [
                thread["thread_id"],
                thread["status"],
                Jsonb(thread.get("metadata") or {}),
                Jsonb(thread.get("config") or {}),
                _json(thread.get("values")),
                Jsonb(thread.get("interrupts") or {}),
                _json(thread.get("error")),
                thread["created_at"],
                thread["updated_at"],
            ],
        )
        return row  # type: ignore[return-value]

    async def update_thread(self, thread_id: str, **fields: Any) -> Optional[Thread]:
        unknown = set(fields) - _THREAD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown thread columns: {sorted(unknown)}")

        assignments = [sql.SQL("updated_at=now()")]
        params: list[Any] = []
        for column, value in fields.items():
            assignments.append(sql.SQL("{}=%s").format(sql.Identifier(column)))
            params.append(_json(value) if column in _JSON_COLUMNS else value)
        params.append(thread_id)

        query = sql.SQL("UPDATE threads SET {} WHERE thread_id=%s RETURNING {}").format(
            sql.SQL(", ").join(assignments),
            sql.SQL(THREAD_COLUMNS),
        )
        return await fetch_one(self._conn, query, params)

    async def delete_thread(self, thread_id: str) -> bool:
        row = await fetch_one(
            self._conn,
            "DELETE FROM threads WHERE thread_id=%s RETURNING thread_id",
            [thread_id],
        )
        return row is not None

    async def get_run(self, run_id: str) -> Optional[Run]:
        return await fetch_one(self._conn, f"SELECT {RUN_COLUMNS} FROM runs WHERE run_id=%s", [run_id])

    async def insert_run(self, run: Run) -> Run:
        row = await fetch_one(
            self._conn,
            f"""
            INSERT INTO runs (run_id, thread_id, assistant_id, status, metadata, kwargs,
                              multitask_strategy, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {RUN_COLUMNS}
            """,
            [
                run["run_id"],
                run["thread_id"],
                run["assistant_id"],
                run["status"],
                Jsonb(run.get("metadata") or {}),
                Jsonb(run.get("kwargs") or {}),
                run["multitask_strategy"],
                run["created_at"],
                run["updated_at"],
            ],
        )
        return row  # type: ignore[return-value]

    async def set_run_status(self, run_id: str, status: RunStatus) -> Optional[Run]:
        return await fetch_one(
            self._conn,
            f"""
            UPDATE runs SET status=%s, updated_at=now()
            WHERE run_id=%s AND status='pending'
            RETURNING {RUN_COLUMNS}
            """,
            [status, run_id],
        )

    async def delete_run(self, run_id: str) -> bool:
        row = await fetch_one(self._conn, "DELETE FROM runs WHERE run_id=%s RETURNING run_id", [run_id])
        return row is not None

    async def list_runs(
        self,
        thread_id: str,
        *,
        status: Optional[RunStatus] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[Run]:
        return await fetch_all(
            self._conn,
            f"""
            SELECT {RUN_COLUMNS}
            FROM runs
            WHERE thread_id=%s
              AND (%s::text IS NULL OR status=%s)
              AND metadata @> %s
            ORDER BY created_at DESC
            """,
            [thread_id, status, status, Jsonb(metadata or {})],
        )

    async def pending_runs(self, thread_id: str) -> list[Run]:
        return await fetch_all(
            self._conn,
            f"""
            SELECT {RUN_COLUMNS}
            FROM runs
            WHERE thread_id=%s AND status='pending'
            ORDER BY created_at ASC
            """,
            [thread_id],
        )

    async def claimable_runs(self, now: datetime) -> list[Run]:
        return await fetch_all(
            self._conn,
            f"""
            SELECT {RUN_COLUMNS}
            FROM runs
            WHERE status='pending' AND created_at <= %s
            ORDER BY created_at ASC
            """,
            [now],
        )

    async def increment_attempt(self, run_id: str) -> int:
        row = await fetch_one(
            self._conn,
            """
            INSERT INTO run_attempts (run_id, attempt) VALUES (%s, 1)
            ON CONFLICT (run_id) DO UPDATE SET attempt = run_attempts.attempt + 1
            RETURNING attempt
            """,
            [run_id],
        )
        return int(row["attempt"])  # type: ignore[index]


class PostgresStore(Store):
    def __init__(self, conninfo: str) -> None:
        self._conninfo = conninfo

    async def setup(self) -> None:
        async with await get_conn(self._conninfo) as conn:
            for ddl in ALL_TABLES_SQL:
                await exec_sql(conn, ddl)
        logger.info("Postgres tables ready")

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        async with await get_conn(self._conninfo) as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)
