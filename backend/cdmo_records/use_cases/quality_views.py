"""Read views over samples, test results, deviations and CAPA."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from ..domain_errors import not_found
from ..models import PENDING_TEST_RESULTS, Batch, Deviation, Sample
from ..services.record_views import batch_brief, capa_view, deviation_view, sample_view, test_result_view
from ..services.relative_time import as_utc

DEVIATION_PRIORITY = {"Critical": "Urgent", "Major": "High", "Minor": "Low"}


def _get_batch_or_404(*, db: Session, batch_id: UUID) -> Batch:
    batch = db.query(Batch).filter(Batch.id == batch_id).first()
    if not batch:
        raise not_found("Batch")
    return batch


def _days_between(start: datetime | None, end: datetime) -> int:
    start = as_utc(start)
    if start is None:
        return 0
    return max(0, (end - start).days)


def batch_samples_tests_use_case(*, db: Session, batch_id: UUID) -> dict:
    """Samples of a batch with their test results and result statistics."""
    batch = _get_batch_or_404(db=db, batch_id=batch_id)
    samples = (
        db.query(Sample)
        .options(selectinload(Sample.test_results))
        .filter(Sample.batch_id == batch.id)
        .order_by(Sample.sample_id.asc())
        .all()
    )
    results = [result for sample in samples for result in sample.test_results]
    return {
        "batch": batch_brief(batch),
        "samples": [sample_view(sample) for sample in samples],
        "stats": {
            "totalSamples": len(samples),
            "totalTests": len(results),
            "passed": sum(1 for result in results if result.result == "Pass"),
            "failed": sum(1 for result in results if result.result == "Fail"),
            "pending": sum(1 for result in results if result.result in PENDING_TEST_RESULTS),
        },
    }


def _deviation_row(deviation: Deviation, now: datetime) -> dict:
    end = as_utc(deviation.resolution_closed_at) or now
    return {
        **deviation_view(deviation),
        "priority": DEVIATION_PRIORITY.get(deviation.severity, "Low"),
        "ageDays": _days_between(deviation.raised_at, end),
        "capa": capa_view(deviation.capa),
    }


def batch_deviations_capa_use_case(*, db: Session, batch_id: UUID, now: datetime | None = None) -> dict:
    """Deviations of a batch with priority, age and linked CAPA."""
    batch = _get_batch_or_404(db=db, batch_id=batch_id)
    now = as_utc(now) or datetime.now(timezone.utc)
    deviations = (
        db.query(Deviation)
        .options(selectinload(Deviation.capa))
        .filter(Deviation.batch_id == batch.id)
        .order_by(Deviation.raised_at.desc())
        .all()
    )
    return {
        "batch": batch_brief(batch),
        "deviations": [_deviation_row(deviation, now) for deviation in deviations],
        "stats": {
            "total": len(deviations),
            "open": sum(1 for dev in deviations if dev.status == "Open"),
            "inProgress": sum(1 for dev in deviations if dev.status == "In-Progress"),
            "closed": sum(1 for dev in deviations if dev.status == "Closed"),
            "critical": sum(1 for dev in deviations if dev.severity == "Critical"),
            "withCapa": sum(1 for dev in deviations if dev.resolution_capa_id is not None),
        },
    }


def sample_detail_use_case(*, db: Session, sample_id: UUID) -> dict:
    sample = (
        db.query(Sample)
        .options(selectinload(Sample.test_results), selectinload(Sample.batch))
        .filter(Sample.id == sample_id)
        .first()
    )
    if not sample:
        raise not_found("Sample")
    return {
        **sample_view(sample, with_results=False),
        "batch": batch_brief(sample.batch),
        "testResults": [test_result_view(result) for result in sample.test_results],
    }


def deviation_detail_use_case(*, db: Session, deviation_id: UUID, now: datetime | None = None) -> dict:
    deviation = (
        db.query(Deviation)
        .options(selectinload(Deviation.capa), selectinload(Deviation.batch))
        .filter(Deviation.id == deviation_id)
        .first()
    )
    if not deviation:
        raise not_found("Deviation")
    now = as_utc(now) or datetime.now(timezone.utc)
    row = _deviation_row(deviation, now)
    row["daysOpen"] = row.pop("ageDays")
    row["batch"] = batch_brief(deviation.batch)
    return row
