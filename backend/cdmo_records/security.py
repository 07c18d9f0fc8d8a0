"""Visibility scoping: which batches a caller may see in listings."""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import false
from sqlalchemy.orm import Session

from .auth import VIEW_ALL_BATCHES, check_permission
from .models import Batch, ProjectAssignment, User


@dataclass(frozen=True)
class BatchScope:
    """Either unrestricted, or restricted to an explicit (possibly empty) id set."""

    unrestricted: bool
    batch_ids: frozenset[UUID] = field(default_factory=frozenset)

    def allows(self, batch_id: UUID) -> bool:
        return self.unrestricted or batch_id in self.batch_ids

    @property
    def is_empty(self) -> bool:
        return not self.unrestricted and not self.batch_ids


UNRESTRICTED = BatchScope(unrestricted=True)


def scope_for_caller(db: Session, user: User) -> BatchScope:
    """Callers with batches:view_all see everything; others see batches of their assigned projects."""
    if check_permission(user, *VIEW_ALL_BATCHES):
        return UNRESTRICTED

    assigned_project_ids = db.query(ProjectAssignment.project_id).filter(
        ProjectAssignment.user_id == user.id,
    )
    rows = db.query(Batch.id).filter(Batch.project_id.in_(assigned_project_ids)).all()
    return BatchScope(unrestricted=False, batch_ids=frozenset(row[0] for row in rows))


def apply_batch_scope(query, scope: BatchScope, column=Batch.id):
    """Restrict a query on batches (or rows keyed by batch id) to the caller's scope."""
    if scope.unrestricted:
        return query
    if not scope.batch_ids:
        return query.filter(false())
    return query.filter(column.in_(scope.batch_ids))
