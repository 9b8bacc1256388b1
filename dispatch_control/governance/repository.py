# dispatch_control/governance/repository.py
"""
Approval request persistence.

Statements run on the caller's session and are never committed here;
ApprovalManager owns the transaction. Status changes are guarded by the
expected current status so a concurrent writer loses cleanly.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import tables
from ..db.tables import utcnow
from ..errors import ConflictError
from .models import ApprovalFilters, ApprovalRequest, ApprovalStatus, SubjectKind


class ApprovalRepository:
    """Reads and writes approval_request and its approver rows."""

    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        t = tables.approval_request
        row = self.session.execute(
            select(t).where(t.c.id == request_id)
        ).mappings().fetchone()
        if row is None:
            return None
        return ApprovalRequest.from_row(row, self._approvers_for([request_id]).get(request_id, []))

    def find_pending(self, subject_id: str, action: str) -> Optional[ApprovalRequest]:
        t = tables.approval_request
        row = self.session.execute(
            select(t.c.id).where(
                t.c.subject_id == subject_id,
                t.c.action == action,
                t.c.status == ApprovalStatus.PENDING.value,
            )
        ).first()
        return self.get(row[0]) if row else None

    def list(
        self,
        filters: ApprovalFilters,
        page: int,
        limit: int,
        approver_id: Optional[str] = None,
    ) -> Tuple[List[ApprovalRequest], int]:
        """Filtered page of requests plus the total match count."""
        t = tables.approval_request
        conditions = self._conditions(filters)
        if approver_id is not None:
            a = tables.approval_request_approver
            conditions.append(
                t.c.id.in_(select(a.c.request_id).where(a.c.user_id == approver_id))
            )
        where = and_(*conditions) if conditions else None

        count_stmt = select(func.count()).select_from(t)
        stmt = select(t)
        if where is not None:
            count_stmt = count_stmt.where(where)
            stmt = stmt.where(where)

        if filters.newest_first:
            stmt = stmt.order_by(t.c.created_at.desc(), t.c.id.desc())
        else:
            stmt = stmt.order_by(t.c.created_at.asc(), t.c.id.asc())
        stmt = stmt.offset((page - 1) * limit).limit(limit)

        total = self.session.execute(count_stmt).scalar() or 0
        rows = list(self.session.execute(stmt).mappings())
        approvers = self._approvers_for([row["id"] for row in rows])
        items = [ApprovalRequest.from_row(row, approvers.get(row["id"], [])) for row in rows]
        return items, total

    def statistics(self, overdue_after_days: int) -> Dict[str, Any]:
        t = tables.approval_request
        pending = t.c.status == ApprovalStatus.PENDING.value

        by_status = {
            status: count
            for status, count in self.session.execute(
                select(t.c.status, func.count()).group_by(t.c.status)
            )
        }
        pending_by_action = {
            action: count
            for action, count in self.session.execute(
                select(t.c.action, func.count()).where(pending).group_by(t.c.action)
            )
        }

        cutoff = utcnow() - timedelta(days=overdue_after_days)
        overdue = self.session.execute(
            select(func.count()).select_from(t).where(pending, t.c.created_at < cutoff)
        ).scalar() or 0

        activated = self.session.execute(
            select(func.count()).select_from(t).where(t.c.activated.is_(True))
        ).scalar() or 0

        # Averaged in Python; date arithmetic differs between backends
        durations = [
            (_aware(decided) - _aware(created)).total_seconds() / 3600
            for created, decided in self.session.execute(
                select(t.c.created_at, t.c.decision_at).where(t.c.decision_at.isnot(None))
            )
        ]
        average_hours = round(sum(durations) / len(durations), 2) if durations else None

        return {
            "total_pending": by_status.get(ApprovalStatus.PENDING.value, 0),
            "counts_by_status": {s.value: by_status.get(s.value, 0) for s in ApprovalStatus},
            "pending_by_action": pending_by_action,
            "average_processing_hours": average_hours,
            "overdue_pending": overdue,
            "overdue_after_days": overdue_after_days,
            "activated": activated,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, request: ApprovalRequest) -> None:
        """
        Insert a new request and its approver rows.

        Raises:
            ConflictError: PENDING_APPROVAL_EXISTS when the one-pending
                index rejects the row
        """
        try:
            self.session.execute(
                insert(tables.approval_request).values(
                    id=request.id,
                    subject_id=request.subject_id,
                    subject_kind=request.subject_kind.value,
                    dependent_id=request.dependent_id,
                    action=request.action,
                    status=request.status.value,
                    requested_by=request.requested_by,
                    approver_roles=list(request.approver_roles),
                    original_data=request.original_data,
                    proposed_changes=request.proposed_changes,
                    payload_version=request.payload_version,
                    request_notes=request.request_notes,
                    activated=False,
                    created_at=request.created_at,
                    updated_at=request.updated_at,
                )
            )
        except IntegrityError as e:
            raise ConflictError(
                "A pending approval request already exists for this subject and action",
                code="PENDING_APPROVAL_EXISTS",
                details={"subject_id": request.subject_id, "action": request.action},
            ) from e
        self._insert_approvers(request.id, request.approvers)

    def transition(
        self,
        request_id: str,
        expected: ApprovalStatus,
        values: Dict[str, Any],
    ) -> bool:
        """Update a request only if it is still in `expected`. Returns False if it was not."""
        t = tables.approval_request
        result = self.session.execute(
            update(t)
            .where(t.c.id == request_id, t.c.status == expected.value)
            .values(updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    def update_fields(
        self,
        request_id: str,
        allowed_statuses: Iterable[ApprovalStatus],
        values: Dict[str, Any],
    ) -> bool:
        t = tables.approval_request
        result = self.session.execute(
            update(t)
            .where(t.c.id == request_id, t.c.status.in_([s.value for s in allowed_statuses]))
            .values(updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    def mark_activated(self, request_id: str, actor: str, at: datetime) -> bool:
        """Set the activation fields once. Returns False if already activated."""
        t = tables.approval_request
        result = self.session.execute(
            update(t)
            .where(
                t.c.id == request_id,
                t.c.status == ApprovalStatus.APPROVED.value,
                t.c.activated.is_(False),
            )
            .values(activated=True, activated_at=at, activated_by=actor, updated_at=at)
        )
        return result.rowcount == 1

    def replace_approvers(self, request_id: str, user_ids: Iterable[str]) -> None:
        a = tables.approval_request_approver
        self.session.execute(delete(a).where(a.c.request_id == request_id))
        self._insert_approvers(request_id, user_ids)

    def delete(self, request_id: str, expected: ApprovalStatus) -> bool:
        """Physically delete a request still in `expected`."""
        t = tables.approval_request
        a = tables.approval_request_approver
        # SQLite does not enforce ON DELETE CASCADE without a pragma
        self.session.execute(delete(a).where(a.c.request_id == request_id))
        result = self.session.execute(
            delete(t).where(t.c.id == request_id, t.c.status == expected.value)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert_approvers(self, request_id: str, user_ids: Iterable[str]) -> None:
        rows = [{"request_id": request_id, "user_id": u} for u in sorted(set(user_ids))]
        if rows:
            self.session.execute(insert(tables.approval_request_approver), rows)

    def _approvers_for(self, request_ids: List[str]) -> Dict[str, List[str]]:
        if not request_ids:
            return {}
        a = tables.approval_request_approver
        result: Dict[str, List[str]] = {}
        for request_id, user_id in self.session.execute(
            select(a.c.request_id, a.c.user_id)
            .where(a.c.request_id.in_(request_ids))
            .order_by(a.c.user_id)
        ):
            result.setdefault(request_id, []).append(user_id)
        return result

    def _conditions(self, filters: ApprovalFilters) -> list:
        t = tables.approval_request
        conditions = []
        if filters.status is not None:
            conditions.append(t.c.status == ApprovalStatus(filters.status).value)
        if filters.action:
            conditions.append(t.c.action == filters.action)
        if filters.subject_kind is not None:
            conditions.append(t.c.subject_kind == SubjectKind(filters.subject_kind).value)
        if filters.subject_id:
            conditions.append(t.c.subject_id == filters.subject_id)
        if filters.requested_by:
            conditions.append(t.c.requested_by == filters.requested_by)
        if filters.created_from is not None:
            conditions.append(t.c.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(t.c.created_at <= filters.created_to)
        return conditions


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
