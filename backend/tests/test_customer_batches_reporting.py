from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from cdmo_records.domain_errors import DomainError
from cdmo_records.models import Batch
from cdmo_records.security import UNRESTRICTED, BatchScope, scope_for_caller
from cdmo_records.use_cases.batch_reporting import customer_batch_summary_use_case, list_customers_use_case
from cdmo_records.use_cases.dashboard_reporting import (
    customer_batch_dashboard_use_case,
    dashboard_summary_use_case,
)

STATUSES = ["Not Started", "In-Process", "In-Process", "On-Hold", "Completed", "Released", "Rejected"]


@pytest.fixture
def project(db, records):
    return records.make_project(db)


@pytest.fixture
def batches(db, records, project):
    created = []
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for index, status in enumerate(STATUSES):
        batch = records.make_batch(db, project, f"ACME-{index:03d}", status=status)
        batch.created_at = base + timedelta(days=index)
        created.append(batch)
    db.commit()
    return created


def test_release_stamp_follows_status(db, project, batches) -> None:
    for batch in batches:
        released = batch.status == "Released"
        assert released == (batch.released_at is not None) == (batch.released_by is not None)

    db.add(Batch(api_batch_id="ACME-BAD", customer_id=project.customer_id, project_id=project.id, status="Released"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_summary_counts_cover_all_pages(db, project, batches) -> None:
    page = customer_batch_summary_use_case(
        db=db, customer_id=project.customer_id, scope=UNRESTRICTED, page=2, limit=3,
    )

    summary = page["summary"]
    assert summary["totalBatches"] == len(STATUSES)
    # Rejected has no display bucket of its own and falls back to Not Started.
    assert summary == {
        "totalBatches": 7,
        "notStarted": 2,
        "inProgress": 2,
        "completed": 1,
        "qaHold": 1,
        "released": 1,
    }
    assert summary["totalBatches"] == sum(value for key, value in summary.items() if key != "totalBatches")
    assert page["pagination"] == {
        "currentPage": 2,
        "totalPages": 3,
        "totalRecords": 7,
        "hasNext": True,
        "hasPrev": True,
        "limit": 3,
    }
    assert len(page["batches"]) == 3


def test_default_sort_is_newest_first(db, project, batches) -> None:
    page = customer_batch_summary_use_case(db=db, customer_id=project.customer_id, scope=UNRESTRICTED)

    assert [row["api_batch_id"] for row in page["batches"]] == [f"ACME-{index:03d}" for index in range(6, -1, -1)]
    assert page["pagination"]["hasNext"] is False
    assert page["pagination"]["hasPrev"] is False


def test_page_beyond_end_is_empty(db, project, batches) -> None:
    page = customer_batch_summary_use_case(
        db=db, customer_id=project.customer_id, scope=UNRESTRICTED, page=5, limit=3,
    )

    assert page["batches"] == []
    assert page["pagination"]["totalPages"] == 3
    assert page["pagination"]["hasNext"] is False


def test_search_filters_rows_and_summary(db, records, project, batches) -> None:
    records.make_batch(db, project, "OTHER-100_X", status="In-Process")

    page = customer_batch_summary_use_case(
        db=db, customer_id=project.customer_id, scope=UNRESTRICTED, search="00_",
    )

    assert [row["api_batch_id"] for row in page["batches"]] == ["OTHER-100_X"]
    assert page["summary"]["totalBatches"] == 1
    assert page["summary"]["inProgress"] == 1


def test_row_counters_and_progress(db, records, project) -> None:
    batch = records.make_batch(db, project, "ACME-P", status="In-Process")
    records.add_steps(db, batch, total=3, completed=2)
    records.add_sample_with_results(db, batch, "S-1", "Pass")
    records.add_sample_with_results(db, batch, "S-2")
    records.add_deviation(db, batch, "DEV-1", severity="Critical")
    records.add_deviation(db, batch, "DEV-2", severity="Minor", status="Closed")
    empty = records.make_batch(db, project, "ACME-E", status="Not Started")

    page = customer_batch_summary_use_case(
        db=db, customer_id=project.customer_id, scope=UNRESTRICTED, sort_by="api_batch_id", sort_order="asc",
    )
    rows = {row["api_batch_id"]: row for row in page["batches"]}

    assert rows["ACME-P"]["progress"] == 67
    assert rows["ACME-P"]["totalSteps"] == 3
    assert rows["ACME-P"]["completedSteps"] == 2
    assert rows["ACME-P"]["samples"] == 2
    assert rows["ACME-P"]["deviations"] == {"total": 2, "critical": 1, "non_critical": 1}
    assert rows["ACME-P"]["displayStatus"] == "In Progress"
    assert rows["ACME-P"]["statusColor"] == "yellow"
    assert rows[empty.api_batch_id]["progress"] == 0
    assert rows[empty.api_batch_id]["totalSteps"] == 0
    assert all(0 <= row["progress"] <= 100 for row in page["batches"])


def test_sort_by_progress(db, records, project) -> None:
    low = records.make_batch(db, project, "ACME-LOW", status="In-Process")
    high = records.make_batch(db, project, "ACME-HIGH", status="In-Process")
    records.add_steps(db, low, total=4, completed=1)
    records.add_steps(db, high, total=2, completed=2)

    page = customer_batch_summary_use_case(
        db=db, customer_id=project.customer_id, scope=UNRESTRICTED, sort_by="progress", sort_order="desc",
    )

    assert [row["api_batch_id"] for row in page["batches"]] == ["ACME-HIGH", "ACME-LOW"]


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"sort_by": "colour"}, "INVALID_SORT_FIELD"),
        ({"sort_order": "sideways"}, "INVALID_SORT_ORDER"),
    ],
)
def test_invalid_sorting_is_rejected(db, project, kwargs, code) -> None:
    with pytest.raises(DomainError) as exc_info:
        customer_batch_summary_use_case(db=db, customer_id=project.customer_id, scope=UNRESTRICTED, **kwargs)

    assert exc_info.value.http_status == 400
    assert exc_info.value.code == code


def test_unknown_customer_is_not_found(db) -> None:
    with pytest.raises(DomainError) as exc_info:
        customer_batch_summary_use_case(db=db, customer_id=uuid4(), scope=UNRESTRICTED)

    assert exc_info.value.code == "CUSTOMER_NOT_FOUND"


def test_empty_scope_lists_nothing(db, records, project, batches) -> None:
    operator = records.make_user(db, "Operator")
    scope = scope_for_caller(db, operator)

    assert scope.is_empty
    page = customer_batch_summary_use_case(db=db, customer_id=project.customer_id, scope=scope)
    assert page["batches"] == []
    assert page["summary"]["totalBatches"] == 0
    assert page["pagination"]["totalPages"] == 0
    assert list_customers_use_case(db=db, scope=scope) == []
    assert customer_batch_dashboard_use_case(db=db, scope=scope) == []


def test_scope_limits_listing_to_assigned_projects(db, records, project, batches) -> None:
    other_project = records.make_project(db, customer_name="Globex", project_code="GLX-001")
    records.make_batch(db, other_project, "GLX-001-B1", status="In-Process")
    operator = records.make_user(db, "Operator")
    records.assign(db, operator, other_project)

    scope = scope_for_caller(db, operator)

    assert not scope.unrestricted
    assert len(scope.batch_ids) == 1
    hidden = customer_batch_summary_use_case(db=db, customer_id=project.customer_id, scope=scope)
    assert hidden["summary"]["totalBatches"] == 0
    customers = list_customers_use_case(db=db, scope=scope)
    assert [customer["name"] for customer in customers] == ["Globex"]
    assert customers[0]["batchCount"] == 1


def test_view_all_capability_is_unrestricted(db, records) -> None:
    supervisor = records.make_user(db, "Supervisor")

    assert scope_for_caller(db, supervisor) is UNRESTRICTED


def test_customer_dashboard_counts_by_status(db, records, project, batches) -> None:
    records.make_project(db, customer_name="Initech", project_code="INI-001")

    board = customer_batch_dashboard_use_case(db=db, scope=UNRESTRICTED)
    by_name = {row["customer_name"]: row for row in board}

    acme = by_name["Acme Pharma"]
    assert acme["total_batches"] == 7
    assert acme["in_progress"] == 2
    assert acme["on_hold"] == 1
    assert acme["active_batches"] == 3
    assert acme["pending_release"] == 1
    assert acme["rejected"] == 1
    assert by_name["Initech"]["total_batches"] == 0
    assert by_name["Initech"]["last_activity"] == "No activity"
    assert board[0]["customer_name"] == "Acme Pharma"


def test_customer_dashboard_respects_scope(db, records, project, batches) -> None:
    scope = BatchScope(unrestricted=False, batch_ids=frozenset({batches[1].id}))

    [row] = customer_batch_dashboard_use_case(db=db, scope=scope)

    assert row["customer_name"] == "Acme Pharma"
    assert row["total_batches"] == 1
    assert row["in_progress"] == 1


def test_dashboard_summary_counters(db, records, project, batches) -> None:
    records.add_deviation(db, batches[1], "DEV-1")
    records.add_deviation(db, batches[1], "DEV-2", status="Closed")
    records.add_sample_with_results(db, batches[1], "S-1", "Pass")
    released = batches[5]
    released.released_at = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
    db.commit()

    summary = dashboard_summary_use_case(db=db, now=datetime(2026, 5, 4, 18, 0, tzinfo=timezone.utc))
    assert summary == {
        "activeCustomers": 1,
        "activeBatches": 3,
        "openDeviations": 1,
        "labSamples": 1,
        "releasedToday": 1,
    }

    next_day = dashboard_summary_use_case(db=db, now=datetime(2026, 5, 5, 0, 30, tzinfo=timezone.utc))
    assert next_day["releasedToday"] == 0
