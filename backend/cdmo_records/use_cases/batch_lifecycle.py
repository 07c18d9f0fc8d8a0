"""Batch lifecycle use-cases: every status change goes through one guarded transition."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..audit import AuditSink, record_write
from ..auth import FORCE_RELEASE, require_permission
from ..domain_errors import DomainError, conflict, not_found, validation
from ..models import (
    BATCH_STATUSES,
    OPEN_DEVIATION_STATUSES,
    PENDING_TEST_RESULTS,
    Batch,
    Deviation,
    Sample,
    TestResult,
    User,
)
from ..services.batch_status import (
    BATCH_ACTIONS,
    RELEASABLE_FROM,
    RELEASED,
    TERMINAL_STATUSES,
    can_transition,
)

FORCE_RELEASABLE_FROM = tuple(status for status in BATCH_STATUSES if status not in TERMINAL_STATUSES)


def _get_batch_or_404(*, db: Session, batch_id: UUID) -> Batch:
    batch = db.query(Batch).filter(Batch.id == batch_id).first()
    if not batch:
        raise not_found("Batch")
    return batch


def _open_deviations_query(batch_id: UUID):
    return select(Deviation.id).where(
        Deviation.batch_id == batch_id,
        Deviation.status.in_(OPEN_DEVIATION_STATUSES),
    )


def _pending_tests_query(batch_id: UUID):
    return select(TestResult.id).join(Sample, TestResult.sample_record_id == Sample.id).where(
        Sample.batch_id == batch_id,
        TestResult.result.in_(PENDING_TEST_RESULTS),
    )


def count_open_deviations(db: Session, batch_id: UUID) -> int:
    subquery = _open_deviations_query(batch_id).subquery()
    return db.execute(select(func.count()).select_from(subquery)).scalar_one()


def count_pending_tests(db: Session, batch_id: UUID) -> int:
    subquery = _pending_tests_query(batch_id).subquery()
    return db.execute(select(func.count()).select_from(subquery)).scalar_one()


def _invalid_transition(batch: Batch, new_status: str) -> DomainError:
    return conflict(
        "BATCH_INVALID_TRANSITION",
        f"Cannot change batch status from {batch.status} to {new_status}",
        details={"from": batch.status, "to": new_status},
    )


def _assert_releasable(*, db: Session, batch: Batch, allowed_from: tuple[str, ...], gated: bool) -> None:
    """Raise the specific release failure for the batch's current state, if any."""
    if batch.status == RELEASED:
        raise conflict(
            "BATCH_ALREADY_RELEASED",
            "Batch is already released",
            details={"batchId": str(batch.id), "released_at": batch.released_at},
        )
    if batch.status not in allowed_from:
        raise _invalid_transition(batch, RELEASED)
    if not gated:
        return

    open_deviations = count_open_deviations(db, batch.id)
    if open_deviations:
        raise conflict(
            "BATCH_RELEASE_BLOCKED_OPEN_DEVIATIONS",
            f"Cannot release batch. {open_deviations} open deviation(s) must be resolved first.",
            details={"count": open_deviations},
        )

    pending_tests = count_pending_tests(db, batch.id)
    if pending_tests:
        raise conflict(
            "BATCH_RELEASE_BLOCKED_PENDING_TESTS",
            f"Cannot release batch. {pending_tests} test result(s) are still pending.",
            details={"count": pending_tests},
        )


def _release(
    *,
    db: Session,
    batch_id: UUID,
    actor: User,
    notes: str | None,
    gated: bool,
) -> Batch:
    """Check-then-set as a single conditional UPDATE keyed on batch id.

    The eligibility rule is part of the UPDATE's WHERE clause, so of several
    concurrent attempts exactly one matches a row. A zero rowcount is then
    diagnosed against the committed state.
    """
    allowed_from = RELEASABLE_FROM if gated else FORCE_RELEASABLE_FROM
    batch = _get_batch_or_404(db=db, batch_id=batch_id)
    _assert_releasable(db=db, batch=batch, allowed_from=allowed_from, gated=gated)

    conditions = [Batch.id == batch_id, Batch.status.in_(allowed_from)]
    if gated:
        conditions.append(~_open_deviations_query(batch_id).exists())
        conditions.append(~_pending_tests_query(batch_id).exists())

    result = db.execute(
        update(Batch)
        .where(*conditions)
        .values(
            status=RELEASED,
            released_at=datetime.now(timezone.utc),
            released_by=actor.id,
            release_notes=notes,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.expire_all()
        batch = _get_batch_or_404(db=db, batch_id=batch_id)
        _assert_releasable(db=db, batch=batch, allowed_from=allowed_from, gated=gated)
        raise conflict("BATCH_CONCURRENT_UPDATE", "Batch was modified concurrently, retry the release")

    db.commit()
    return _get_batch_or_404(db=db, batch_id=batch_id)


def release_response(batch: Batch, *, forced: bool = False) -> dict:
    return {
        "batchId": batch.id,
        "api_batch_id": batch.api_batch_id,
        "status": batch.status,
        "released_at": batch.released_at,
        "released_by": batch.released_by,
        "release_notes": batch.release_notes,
        "customer_name": batch.customer.name if batch.customer else None,
        "project_name": batch.project.project_name if batch.project else None,
        "forced": forced,
    }


def get_batch_status_use_case(*, db: Session, batch_id: UUID) -> Batch:
    """Current status of a batch."""
    return _get_batch_or_404(db=db, batch_id=batch_id)


def release_batch_use_case(
    *,
    db: Session,
    batch_id: UUID,
    current_user: User,
    audit_sink: AuditSink,
    notes: str | None = None,
) -> dict:
    """Release a batch once it has no open deviations and no pending tests."""
    try:
        batch = _release(db=db, batch_id=batch_id, actor=current_user, notes=notes, gated=True)
    except DomainError as exc:
        record_write(
            audit_sink,
            actor=current_user,
            action="batch_released",
            entity_type="Batch",
            entity_id=batch_id,
            outcome=exc.code,
            details=exc.details,
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="batch_released",
        entity_type="Batch",
        entity_id=batch.id,
        details={"api_batch_id": batch.api_batch_id, "released_at": batch.released_at.isoformat()},
    )
    return release_response(batch)


def force_release_batch_use_case(
    *,
    db: Session,
    batch_id: UUID,
    current_user: User,
    audit_sink: AuditSink,
    reason: str,
    notes: str | None = None,
) -> dict:
    """Release without the deviation/test gate. Requires batches:force_release."""
    try:
        require_permission(current_user, *FORCE_RELEASE)
        batch = _get_batch_or_404(db=db, batch_id=batch_id)
        bypassed = {
            "openDeviations": count_open_deviations(db, batch.id),
            "pendingTests": count_pending_tests(db, batch.id),
        }
        release_notes = f"FORCED RELEASE: {reason}" + (f"\n{notes}" if notes else "")
        batch = _release(db=db, batch_id=batch_id, actor=current_user, notes=release_notes, gated=False)
    except DomainError as exc:
        record_write(
            audit_sink,
            actor=current_user,
            action="batch_force_released",
            entity_type="Batch",
            entity_id=batch_id,
            outcome=exc.code,
            details={"reason": reason},
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="batch_force_released",
        entity_type="Batch",
        entity_id=batch.id,
        details={"reason": reason, "bypassed": bypassed},
    )
    return release_response(batch, forced=True)


def _change_status(*, db: Session, batch_id: UUID, new_status: str) -> tuple[Batch, str]:
    batch = _get_batch_or_404(db=db, batch_id=batch_id)
    old_status = batch.status
    if not can_transition(old_status, new_status):
        raise _invalid_transition(batch, new_status)

    result = db.execute(
        update(Batch)
        .where(Batch.id == batch_id, Batch.status == old_status)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise conflict("BATCH_CONCURRENT_UPDATE", "Batch was modified concurrently, reload and retry")
    db.commit()
    return _get_batch_or_404(db=db, batch_id=batch_id), old_status


def update_batch_status_use_case(
    *,
    db: Session,
    batch_id: UUID,
    new_status: str,
    current_user: User,
    audit_sink: AuditSink,
    notes: str | None = None,
) -> Batch:
    """Move a batch to new_status. Released goes through the release gate."""
    if new_status not in BATCH_STATUSES:
        exc = validation(
            "BATCH_INVALID_STATUS",
            f"Invalid status. Must be one of: {', '.join(BATCH_STATUSES)}",
            details={"allowed": list(BATCH_STATUSES)},
        )
        record_write(
            audit_sink,
            actor=current_user,
            action="batch_status_changed",
            entity_type="Batch",
            entity_id=batch_id,
            outcome=exc.code,
            details={"to": new_status},
        )
        raise exc

    if new_status == RELEASED:
        release_batch_use_case(
            db=db,
            batch_id=batch_id,
            current_user=current_user,
            audit_sink=audit_sink,
            notes=notes,
        )
        return _get_batch_or_404(db=db, batch_id=batch_id)

    try:
        batch, old_status = _change_status(db=db, batch_id=batch_id, new_status=new_status)
    except DomainError as exc:
        record_write(
            audit_sink,
            actor=current_user,
            action="batch_status_changed",
            entity_type="Batch",
            entity_id=batch_id,
            outcome=exc.code,
            details={"to": new_status},
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="batch_status_changed",
        entity_type="Batch",
        entity_id=batch.id,
        details={"from": old_status, "to": new_status, "notes": notes},
    )
    return batch


def perform_batch_action_use_case(
    *,
    db: Session,
    batch_id: UUID,
    action: str,
    current_user: User,
    audit_sink: AuditSink,
    notes: str | None = None,
) -> Batch:
    """Named action (start/hold/resume/complete/reject/release) mapped onto a status change."""
    target = BATCH_ACTIONS.get(action.lower())
    if target is None:
        raise validation(
            "BATCH_INVALID_ACTION",
            f"Invalid action. Must be one of: {', '.join(BATCH_ACTIONS)}",
            details={"allowed": list(BATCH_ACTIONS)},
        )
    return update_batch_status_use_case(
        db=db,
        batch_id=batch_id,
        new_status=target,
        current_user=current_user,
        audit_sink=audit_sink,
        notes=notes,
    )
