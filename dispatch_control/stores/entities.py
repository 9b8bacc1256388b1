# dispatch_control/stores/entities.py
"""
Entity store over a single table.

Key-value access by primary key: get / update / exists, plus insert for
the submission workflows. Statements run on the caller's session and are
never committed here; the unit of work owns the transaction.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import Table, insert, select, update
from sqlalchemy.orm import Session

from ..db import tables
from ..db.tables import utcnow
from ..errors import InternalError, NotFoundError


class SqlEntityStore:
    """Entity store backed by one SQLAlchemy Core table."""

    def __init__(self, session: Session, table: Table, entity_name: Optional[str] = None):
        self.session = session
        self.table = table
        self.entity_name = entity_name or table.name

    def get(self, entity_id: str) -> Dict[str, Any]:
        """
        Read an entity.

        Raises:
            NotFoundError: no row with this id
        """
        row = self._fetch(entity_id)
        if row is None:
            raise NotFoundError(
                f"{self.entity_name} not found: {entity_id}",
                code=f"{self.entity_name.upper()}_NOT_FOUND",
                details={"entity_id": entity_id},
            )
        return row

    def exists(self, entity_id: str) -> bool:
        stmt = select(self.table.c.id).where(self.table.c.id == entity_id)
        return self.session.execute(stmt).first() is not None

    def update(self, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a patch and return the updated entity.

        Raises:
            NotFoundError: no row with this id
            InternalError: patch names a column the table does not have
        """
        unknown = [key for key in patch if key not in self.table.c]
        if unknown:
            raise InternalError(
                f"Unknown {self.entity_name} fields: {unknown}",
                code="UNKNOWN_ENTITY_FIELDS",
                details={"entity_id": entity_id, "fields": unknown},
            )

        values = dict(patch)
        if "updated_at" in self.table.c and "updated_at" not in values:
            values["updated_at"] = utcnow()

        result = self.session.execute(
            update(self.table).where(self.table.c.id == entity_id).values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(
                f"{self.entity_name} not found: {entity_id}",
                code=f"{self.entity_name.upper()}_NOT_FOUND",
                details={"entity_id": entity_id},
            )
        self.session.flush()
        return self.get(entity_id)

    def insert(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row (id generated when absent) and return it."""
        row = dict(values)
        row.setdefault("id", str(uuid4()))
        now = utcnow()
        if "created_at" in self.table.c:
            row.setdefault("created_at", now)
        if "updated_at" in self.table.c:
            row.setdefault("updated_at", now)

        self.session.execute(insert(self.table).values(**row))
        self.session.flush()
        return self.get(row["id"])

    def _fetch(self, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.session.execute(
            select(self.table).where(self.table.c.id == entity_id)
        ).mappings().fetchone()
        return dict(row) if row else None


def machine_store(session: Session) -> SqlEntityStore:
    return SqlEntityStore(session, tables.machine, "machine")


def qc_entry_store(session: Session) -> SqlEntityStore:
    return SqlEntityStore(session, tables.qc_entry, "qc_entry")
