# Stores module - SQL implementations of the entity store and directory
from .entities import SqlEntityStore, machine_store, qc_entry_store
from .directory import SqlDirectory

__all__ = ["SqlEntityStore", "machine_store", "qc_entry_store", "SqlDirectory"]
