"""Dashboard counters and the per-customer batch board."""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session

from ..models import OPEN_DEVIATION_STATUSES, Batch, Customer, Deviation, Sample
from ..security import BatchScope
from ..services.batch_status import COMPLETED, IN_PROCESS, NOT_STARTED, ON_HOLD, REJECTED, RELEASED
from ..services.relative_time import as_utc, time_ago

ACTIVE_STATUSES = (IN_PROCESS, ON_HOLD)


def _utc_day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def dashboard_summary_use_case(*, db: Session, now: datetime | None = None) -> dict:
    """Five independent global counters."""
    now = as_utc(now) or datetime.now(timezone.utc)
    day_start, day_end = _utc_day_bounds(now)

    return {
        "activeCustomers": db.query(func.count(Customer.id)).scalar() or 0,
        "activeBatches": db.query(func.count(Batch.id)).filter(Batch.status.in_(ACTIVE_STATUSES)).scalar() or 0,
        "openDeviations": db.query(func.count(Deviation.id))
        .filter(Deviation.status.in_(OPEN_DEVIATION_STATUSES))
        .scalar() or 0,
        "labSamples": db.query(func.count(Sample.id)).scalar() or 0,
        "releasedToday": db.query(func.count(Batch.id))
        .filter(
            Batch.status == RELEASED,
            Batch.released_at >= day_start,
            Batch.released_at < day_end,
        )
        .scalar() or 0,
    }


def _count_status(*statuses: str):
    return func.sum(case((Batch.status.in_(statuses), 1), else_=0))


def customer_batch_dashboard_use_case(
    *,
    db: Session,
    scope: BatchScope,
    now: datetime | None = None,
) -> list[dict]:
    """Per-customer batch counts by status, most recently active customer first.

    Unrestricted callers see every customer; scoped callers only customers
    with at least one visible batch.
    """
    if scope.is_empty:
        return []

    join_condition = [Batch.customer_id == Customer.id]
    if not scope.unrestricted:
        join_condition.append(Batch.id.in_(scope.batch_ids))

    query = (
        db.query(
            Customer.id,
            Customer.name,
            Customer.country,
            func.count(Batch.id).label("total"),
            _count_status(NOT_STARTED).label("not_started"),
            _count_status(IN_PROCESS).label("in_progress"),
            _count_status(COMPLETED).label("completed"),
            _count_status(RELEASED).label("released"),
            _count_status(ON_HOLD).label("on_hold"),
            _count_status(REJECTED).label("rejected"),
            func.max(Batch.updated_at).label("last_updated"),
        )
        .outerjoin(Batch, and_(*join_condition))
        .group_by(Customer.id, Customer.name, Customer.country)
    )
    if not scope.unrestricted:
        query = query.having(func.count(Batch.id) > 0)

    board = []
    for row in query.all():
        in_progress = int(row.in_progress or 0)
        on_hold = int(row.on_hold or 0)
        completed = int(row.completed or 0)
        board.append(
            {
                "customer_id": row.id,
                "customer_name": row.name,
                "country": row.country,
                "total_batches": int(row.total or 0),
                "not_started": int(row.not_started or 0),
                "in_progress": in_progress,
                "completed": completed,
                "released": int(row.released or 0),
                "on_hold": on_hold,
                "rejected": int(row.rejected or 0),
                "active_batches": in_progress + on_hold,
                "pending_release": completed,
                "last_updated": as_utc(row.last_updated),
                "last_activity": time_ago(row.last_updated, now),
            }
        )

    oldest = datetime.min.replace(tzinfo=timezone.utc)
    board.sort(key=lambda item: item["customer_name"] or "")
    board.sort(key=lambda item: item["last_updated"] or oldest, reverse=True)
    return board
