from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from .common.datetime_utils import Clock, now_local
from .database.connection import DBConfig, DatabaseConnection
from .database.memory_store import MemoryRecordStore
from .database.mysql_store import MySQLRecordStore
from .database.record_store import RecordStore
from .invoices.service import InvoiceService
from .notifications.dispatcher import LoggingNotificationDispatcher, NotificationDispatcher
from .services.service import ServiceCatalogService
from .unit_of_work import UnitOfWork

STORE_BACKENDS = ("mysql", "memory")


@dataclass(frozen=True)
class Container:
    store: RecordStore
    uow: UnitOfWork
    notifier: NotificationDispatcher

    service_catalog: ServiceCatalogService
    invoice_service: InvoiceService


def build_store(*, backend: str, db_config: Optional[Mapping] = None) -> RecordStore:
    if backend == "memory":
        return MemoryRecordStore()
    if backend == "mysql":
        conn = DatabaseConnection.get_instance(DBConfig.from_mapping(db_config or {}))
        return MySQLRecordStore(conn)
    raise ValueError(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {backend!r}")


def build_container(
    *,
    db_config: Optional[Mapping] = None,
    store_backend: str = "mysql",
    store: Optional[RecordStore] = None,
    clock: Clock = now_local,
    notifier: Optional[NotificationDispatcher] = None,
) -> Container:
    store = store or build_store(backend=store_backend, db_config=db_config)
    uow = UnitOfWork(store)
    notifier = notifier or LoggingNotificationDispatcher()

    service_catalog = ServiceCatalogService(uow, clock=clock)
    invoice_service = InvoiceService(uow, clock=clock, notifier=notifier)

    return Container(
        store=store,
        uow=uow,
        notifier=notifier,
        service_catalog=service_catalog,
        invoice_service=invoice_service,
    )
