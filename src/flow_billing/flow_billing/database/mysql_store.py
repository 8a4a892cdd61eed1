from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple

from .connection import DatabaseConnection
from .record_store import Filters, RecordStore, Row, check_identifier


@contextmanager
def db_cursor(conn_factory: DatabaseConnection, *, dictionary: bool = True):
    conn = conn_factory.connect()
    try:
        cur = conn.cursor(dictionary=dictionary)
        try:
            yield conn, cur
            conn.commit()
        finally:
            cur.close()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _where(filters: Optional[Filters]) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in (filters or {}).items():
        column = check_identifier(column)
        if isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("1=0")
                continue
            clauses.append(f"{column} IN ({', '.join(['%s'] * len(values))})")
            params.extend(values)
        elif value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column}=%s")
            params.append(value)
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def _order(order_by: Sequence[str]) -> str:
    if not order_by:
        return " ORDER BY id"
    parts = []
    for key in order_by:
        column = check_identifier(key.lstrip("-"))
        parts.append(f"{column} DESC" if key.startswith("-") else column)
    return " ORDER BY " + ", ".join(parts)


class _CursorStore(RecordStore):
    """Record store bound to one open cursor (one connection, one transaction)."""

    def __init__(self, cur):
        self._cur = cur

    def get(self, table: str, filters: Filters) -> Optional[Row]:
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        where, params = _where(filters)
        sql = f"SELECT * FROM {check_identifier(table)}{where}{_order(order_by)}"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))
        self._cur.execute(sql, tuple(params))
        return [dict(r) for r in (self._cur.fetchall() or [])]

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        columns = [check_identifier(c) for c in values]
        placeholders = ", ".join(["%s"] * len(columns))
        self._cur.execute(
            f"INSERT INTO {check_identifier(table)}({', '.join(columns)}) VALUES({placeholders})",
            tuple(values[c] for c in columns),
        )
        return int(self._cur.lastrowid)

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Filters,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        assignments = [f"{check_identifier(c)}=%s" for c in values]
        params: List[Any] = list(values.values())
        scoped = dict(filters)
        if expected_version is not None:
            assignments.append("version=version+1")
            scoped["version"] = int(expected_version)
        where, where_params = _where(scoped)
        self._cur.execute(
            f"UPDATE {check_identifier(table)} SET {', '.join(assignments)}{where}",
            tuple(params + where_params),
        )
        return int(self._cur.rowcount)

    def delete(self, table: str, filters: Filters) -> int:
        where, params = _where(filters)
        self._cur.execute(f"DELETE FROM {check_identifier(table)}{where}", tuple(params))
        return int(self._cur.rowcount)

    @contextmanager
    def transaction(self) -> Iterator["_CursorStore"]:
        yield self


class MySQLRecordStore(RecordStore):
    """Record store on mysql-connector; every call outside ``transaction()`` autocommits."""

    def __init__(self, conn_factory: DatabaseConnection):
        self._conn_factory = conn_factory

    def get(self, table: str, filters: Filters) -> Optional[Row]:
        with db_cursor(self._conn_factory) as (_, cur):
            return _CursorStore(cur).get(table, filters)

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        with db_cursor(self._conn_factory) as (_, cur):
            return _CursorStore(cur).select(table, filters, order_by=order_by, limit=limit)

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        with db_cursor(self._conn_factory) as (_, cur):
            return _CursorStore(cur).insert(table, values)

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Filters,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        with db_cursor(self._conn_factory) as (_, cur):
            return _CursorStore(cur).update(table, values, filters, expected_version=expected_version)

    def delete(self, table: str, filters: Filters) -> int:
        with db_cursor(self._conn_factory) as (_, cur):
            return _CursorStore(cur).delete(table, filters)

    @contextmanager
    def transaction(self) -> Iterator[_CursorStore]:
        with db_cursor(self._conn_factory) as (_, cur):
            yield _CursorStore(cur)
