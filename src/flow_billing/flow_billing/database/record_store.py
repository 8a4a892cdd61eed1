from __future__ import annotations

import re
from typing import Any, ContextManager, Dict, List, Mapping, Optional, Protocol, Sequence

Row = Dict[str, Any]
Filters = Mapping[str, Any]

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def check_identifier(name: str) -> str:
    """Table/column names are interpolated into SQL, so only plain identifiers pass."""
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


class RecordStore(Protocol):
    """Generic transactional record store addressed by table name and filter.

    Filters map column -> value; a list/tuple value means IN, None means IS NULL.
    Every table has an integer ``id`` primary key. Versioned tables carry a
    ``version`` column: ``update(..., expected_version=n)`` only touches rows
    still at version n and bumps them to n + 1.
    """

    def get(self, table: str, filters: Filters) -> Optional[Row]:
        raise NotImplementedError

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        """``order_by`` entries are column names, prefixed with '-' for descending."""

        raise NotImplementedError

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        raise NotImplementedError

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Filters,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        """Return the number of rows changed."""

        raise NotImplementedError

    def delete(self, table: str, filters: Filters) -> int:
        raise NotImplementedError

    def transaction(self) -> ContextManager["RecordStore"]:
        """All calls on the yielded store commit together or not at all."""

        raise NotImplementedError
