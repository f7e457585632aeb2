"""Warehouse storage: interface, Delta Lake implementation, in-memory fake."""

from warehouse_pipeline.common.storage.delta import DeltaAuditSink, DeltaWarehouse
from warehouse_pipeline.common.storage.inmemory import InMemoryAuditSink, InMemoryWarehouse
from warehouse_pipeline.common.storage.warehouse import AuditSink, Warehouse

__all__ = [
    "AuditSink",
    "DeltaAuditSink",
    "DeltaWarehouse",
    "InMemoryAuditSink",
    "InMemoryWarehouse",
    "Warehouse",
]
