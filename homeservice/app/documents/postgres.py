"""PostgreSQL implementation of the document store using a JSONB table."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .store import FieldFilter, IndexUnavailableError, StoredDocument, StoreUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (collection, id)
)
"""

_RANGE_OPERATORS = {"==": "=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


def _encode_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_encode_value)


def _json(value: Any) -> psycopg2.extras.Json:
    return psycopg2.extras.Json(value, dumps=_dumps)


@contextmanager
def managed_connection(
    connect: Callable[[], PgConnection],
    conn: Optional[PgConnection] = None,
) -> Iterator[Tuple[PgConnection, bool]]:
    """Yield ``conn`` untouched, or open, commit and close a fresh connection."""

    if conn is not None:
        yield conn, False
        return

    connection = connect()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresDocumentStore:
    """Stores every collection in one ``documents`` table keyed by (collection, id).

    Compare-and-swap updates are expressed as ``WHERE`` clauses over the JSONB
    payload so a precondition and its write happen in a single statement.
    Sorted queries run under a savepoint with ``statement_timeout``; a
    cancelled sort is reported as :class:`IndexUnavailableError`.
    """

    def __init__(
        self,
        connect: Callable[[], PgConnection],
        *,
        conn: Optional[PgConnection] = None,
        sort_timeout_ms: int = 2000,
    ) -> None:
        self._connect = connect
        self._conn = conn
        self._sort_timeout_ms = sort_timeout_ms

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._connect, self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            logger.warning("Document store unavailable: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT data
                FROM documents
                WHERE collection = %s AND id = %s
                LIMIT 1
                """,
                (collection, doc_id),
            )
            row = cursor.fetchone()
        return dict(row["data"]) if row else None

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO documents (collection, id, data)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = NOW()
                """,
                (collection, doc_id, _json(dict(data))),
            )

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        precondition: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        clauses = ["collection = %s", "id = %s"]
        params: List[Any] = [_json(dict(fields)), collection, doc_id]
        for key, expected in (precondition or {}).items():
            if expected is None:
                clauses.append("(NOT (data ? %s) OR data->%s = 'null'::jsonb)")
                params.extend([key, key])
            else:
                clauses.append("data->%s = %s::jsonb")
                params.extend([key, _json(expected)])

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE documents
                SET data = data || %s::jsonb,
                    updated_at = NOW()
                WHERE {' AND '.join(clauses)}
                """,
                params,
            )
            return cursor.rowcount == 1

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        clauses = ["collection = %s"]
        params: List[Any] = [collection]
        for item in filters:
            if item.op == "in":
                values = list(item.value)
                if not values:
                    return []
                placeholders = ", ".join(["%s::jsonb"] * len(values))
                clauses.append(f"data->%s IN ({placeholders})")
                params.append(item.field)
                params.extend(_json(value) for value in values)
            else:
                clauses.append(f"data->%s {_RANGE_OPERATORS[item.op]} %s::jsonb")
                params.extend([item.field, _json(item.value)])

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by is not None:
            # Missing values sort first ascending and last descending, like the in-memory store.
            sql += f" ORDER BY data->%s {'DESC NULLS LAST' if descending else 'ASC NULLS FIRST'}"
            params.append(order_by)
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))

        with self._cursor() as cursor:
            if order_by is None:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
            else:
                rows = self._execute_sorted(cursor, sql, params, collection, order_by)
        return [StoredDocument(id=row["id"], data=dict(row["data"])) for row in rows]

    def _execute_sorted(
        self,
        cursor: PgCursor,
        sql: str,
        params: Sequence[Any],
        collection: str,
        order_by: str,
    ) -> List[Dict[str, Any]]:
        cursor.execute("SAVEPOINT sorted_query")
        try:
            cursor.execute("SET LOCAL statement_timeout = %s", (int(self._sort_timeout_ms),))
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        except psycopg2.errors.QueryCanceled as exc:
            cursor.execute("ROLLBACK TO SAVEPOINT sorted_query")
            logger.warning(
                "Sorted query timed out",
                extra={"collection": collection, "order_by": order_by},
            )
            raise IndexUnavailableError(f"Sorted query on {collection}.{order_by} timed out") from exc
        cursor.execute("RELEASE SAVEPOINT sorted_query")
        # SET LOCAL survives the savepoint release; restore the session default.
        cursor.execute("SET LOCAL statement_timeout = DEFAULT")
        return rows
