from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .record_store import Filters, RecordStore, Row, check_identifier


def _matches(row: Row, filters: Optional[Filters]) -> bool:
    for column, expected in (filters or {}).items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


class MemoryRecordStore(RecordStore):
    """In-process store used by STORE_BACKEND=memory and the test-suite."""

    def __init__(self):
        self._tables: Dict[str, Dict[int, Row]] = {}
        self._next_ids: Dict[str, int] = {}
        self._depth = 0

    def _table(self, table: str) -> Dict[int, Row]:
        return self._tables.setdefault(check_identifier(table), {})

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
        rows = [dict(r) for r in self._table(table).values() if _matches(r, filters)]
        rows.sort(key=lambda r: r["id"])
        # Apply keys last-to-first so the first key ends up primary.
        for key in reversed(list(order_by)):
            column = check_identifier(key.lstrip("-"))
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=key.startswith("-"))
        if limit is not None:
            rows = rows[: int(limit)]
        return rows

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        rows = self._table(table)
        for column in values:
            check_identifier(column)
        new_id = self._next_ids.get(table, 0) + 1
        self._next_ids[table] = new_id
        row = dict(values)
        row["id"] = new_id
        rows[new_id] = row
        return new_id

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Filters,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        for column in values:
            check_identifier(column)
        changed = 0
        for row in self._table(table).values():
            if not _matches(row, filters):
                continue
            if expected_version is not None:
                if row.get("version") != expected_version:
                    continue
                row["version"] = expected_version + 1
            row.update(values)
            changed += 1
        return changed

    def delete(self, table: str, filters: Filters) -> int:
        rows = self._table(table)
        doomed = [row_id for row_id, row in rows.items() if _matches(row, filters)]
        for row_id in doomed:
            del rows[row_id]
        return len(doomed)

    @contextmanager
    def transaction(self) -> Iterator["MemoryRecordStore"]:
        if self._depth:
            yield self
            return

        snapshot = (copy.deepcopy(self._tables), dict(self._next_ids))
        self._depth += 1
        try:
            yield self
        except Exception:
            self._tables, self._next_ids = snapshot
            raise
        finally:
            self._depth -= 1
