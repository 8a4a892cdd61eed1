from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .database.record_store import RecordStore
from .invoices.store_repository import StoreInvoiceRepository
from .services.store_repository import StoreServiceRepository


@dataclass(frozen=True)
class BillingRepositories:
    services: StoreServiceRepository
    invoices: StoreInvoiceRepository


class UnitOfWork:
    """Hands out repositories that share one record-store transaction."""

    def __init__(self, store: RecordStore):
        self._store = store

    @property
    def store(self) -> RecordStore:
        return self._store

    def repositories(self) -> BillingRepositories:
        return BillingRepositories(
            services=StoreServiceRepository(self._store),
            invoices=StoreInvoiceRepository(self._store),
        )

    @contextmanager
    def begin(self) -> Iterator[BillingRepositories]:
        with self._store.transaction() as tx:
            yield BillingRepositories(
                services=StoreServiceRepository(tx),
                invoices=StoreInvoiceRepository(tx),
            )
