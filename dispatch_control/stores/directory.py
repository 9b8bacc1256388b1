# dispatch_control/stores/directory.py
"""
User / role / department directory.
"""

from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..db import tables


class SqlDirectory:
    """Directory lookups against the role, department and app_user tables."""

    def __init__(self, session: Session):
        self.session = session

    def find_users_by_role(self, role_id: str) -> List[str]:
        """Active users holding a role, ordered by id for stable output."""
        t = tables.app_user
        rows = self.session.execute(
            select(t.c.id)
            .where(t.c.role_id == role_id, t.c.is_active.is_(True))
            .order_by(t.c.id)
        )
        return [row[0] for row in rows]

    def find_role_by_name(self, name: str) -> Optional[str]:
        """Role names are matched case-insensitively after trimming."""
        t = tables.role
        normalized = (name or "").strip().lower()
        row = self.session.execute(
            select(t.c.id).where(func.lower(func.trim(t.c.name)) == normalized)
        ).first()
        return row[0] if row else None

    def find_department_by_name(self, name: str) -> Optional[str]:
        t = tables.department
        row = self.session.execute(
            select(t.c.id).where(t.c.name == name)
        ).first()
        return row[0] if row else None

    def find_user_by_login(self, login: str) -> Optional[str]:
        """Resolve a username or email to a user id."""
        t = tables.app_user
        row = self.session.execute(
            select(t.c.id).where(or_(t.c.username == login, t.c.email == login))
        ).first()
        return row[0] if row else None
