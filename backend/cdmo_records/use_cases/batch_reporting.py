"""Read-only batch views: customer summaries, batch detail, genealogy and lineage."""
from __future__ import annotations

import math
from collections import defaultdict
from uuid import UUID

from sqlalchemy import Float, case, cast, func
from sqlalchemy.orm import Session, selectinload

from ..domain_errors import not_found, validation
from ..models import (
    OPEN_DEVIATION_STATUSES,
    Batch,
    BatchComponent,
    Customer,
    Deviation,
    EquipmentEvent,
    ProcessStep,
    Project,
    Sample,
)
from ..security import BatchScope, apply_batch_scope
from ..services.batch_status import SUMMARY_BUCKETS, display_status, empty_summary, progress_percent
from ..services.record_views import (
    batch_brief,
    component_description,
    component_view,
    deviation_view,
    equipment_event_view,
    process_step_view,
    sample_status,
    sample_view,
)

SORT_ORDERS = ("asc", "desc")


def _get_batch_or_404(*, db: Session, batch_id: UUID, options=()) -> Batch:
    batch = db.query(Batch).options(*options).filter(Batch.id == batch_id).first()
    if not batch:
        raise not_found("Batch")
    return batch


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _step_counts_subquery(db: Session):
    return (
        db.query(
            ProcessStep.batch_id.label("batch_id"),
            func.count(ProcessStep.id).label("total_steps"),
            func.count(ProcessStep.end_timestamp).label("completed_steps"),
        )
        .group_by(ProcessStep.batch_id)
        .subquery()
    )


def _sample_counts_subquery(db: Session):
    return (
        db.query(Sample.batch_id.label("batch_id"), func.count(Sample.id).label("sample_count"))
        .group_by(Sample.batch_id)
        .subquery()
    )


def _deviation_counts_subquery(db: Session):
    return (
        db.query(
            Deviation.batch_id.label("batch_id"),
            func.count(Deviation.id).label("total"),
            func.sum(case((Deviation.severity == "Critical", 1), else_=0)).label("critical"),
        )
        .group_by(Deviation.batch_id)
        .subquery()
    )


def customer_batch_summary_use_case(
    *,
    db: Session,
    customer_id: UUID,
    scope: BatchScope,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> dict:
    """Paginated batch list for one customer with per-batch counters and a summary block.

    The summary counts cover every batch matching the filters, not only the
    returned page.
    """
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise not_found("Customer")
    if sort_order not in SORT_ORDERS:
        raise validation("INVALID_SORT_ORDER", "sortOrder must be 'asc' or 'desc'")

    steps = _step_counts_subquery(db)
    samples = _sample_counts_subquery(db)
    deviations = _deviation_counts_subquery(db)

    total_steps = func.coalesce(steps.c.total_steps, 0)
    completed_steps = func.coalesce(steps.c.completed_steps, 0)
    sample_count = func.coalesce(samples.c.sample_count, 0)
    deviation_total = func.coalesce(deviations.c.total, 0)
    deviation_critical = func.coalesce(deviations.c.critical, 0)
    progress_ratio = func.coalesce(cast(completed_steps, Float) / func.nullif(total_steps, 0), 0)

    sort_columns = {
        "createdAt": Batch.created_at,
        "updatedAt": Batch.updated_at,
        "api_batch_id": Batch.api_batch_id,
        "status": Batch.status,
        "product_name": Batch.product_name,
        "released_at": Batch.released_at,
        "targeted_end_date": Batch.targeted_end_date,
        "samples": sample_count,
        "deviations": deviation_total,
        "progress": progress_ratio,
    }
    sort_column = sort_columns.get(sort_by)
    if sort_column is None:
        raise validation(
            "INVALID_SORT_FIELD",
            f"sortBy must be one of: {', '.join(sort_columns)}",
            details={"allowed": list(sort_columns)},
        )

    base = db.query(Batch).filter(Batch.customer_id == customer.id)
    if search:
        base = base.filter(Batch.api_batch_id.ilike(f"%{_escape_like(search.strip())}%", escape="\\"))
    base = apply_batch_scope(base, scope)

    summary = empty_summary()
    for status, count in base.with_entities(Batch.status, func.count(Batch.id)).group_by(Batch.status).all():
        display, _ = display_status(status)
        summary[SUMMARY_BUCKETS[display]] += count
        summary["totalBatches"] += count
    total_records = summary["totalBatches"]

    ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()
    rows = (
        base.outerjoin(steps, steps.c.batch_id == Batch.id)
        .outerjoin(samples, samples.c.batch_id == Batch.id)
        .outerjoin(deviations, deviations.c.batch_id == Batch.id)
        .outerjoin(Project, Project.id == Batch.project_id)
        .with_entities(
            Batch,
            Project.project_name,
            Project.project_code,
            total_steps,
            completed_steps,
            sample_count,
            deviation_total,
            deviation_critical,
        )
        .order_by(ordering, Batch.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    batches = []
    for batch, project_name, project_code, n_steps, n_completed, n_samples, n_deviations, n_critical in rows:
        display, color = display_status(batch.status)
        batches.append(
            {
                "id": batch.id,
                "api_batch_id": batch.api_batch_id,
                "product_name": batch.product_name,
                "project_name": project_name,
                "project_code": project_code,
                "status": batch.status,
                "displayStatus": display,
                "statusColor": color,
                "samples": int(n_samples),
                "deviations": {
                    "total": int(n_deviations),
                    "critical": int(n_critical),
                    "non_critical": int(n_deviations) - int(n_critical),
                },
                "progress": progress_percent(int(n_completed), int(n_steps)),
                "totalSteps": int(n_steps),
                "completedSteps": int(n_completed),
                "targeted_end_date": batch.targeted_end_date,
                "released_at": batch.released_at,
                "created_at": batch.created_at,
                "updated_at": batch.updated_at,
            }
        )

    total_pages = math.ceil(total_records / limit) if total_records else 0
    return {
        "customer": {
            "id": customer.id,
            "name": customer.name or "Unknown Customer",
            "country": customer.country or "N/A",
        },
        "summary": summary,
        "batches": batches,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalRecords": total_records,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
            "limit": limit,
        },
    }


def list_customers_use_case(*, db: Session, scope: BatchScope) -> list[dict]:
    """Customers with visible batch counts; scoped callers only see customers they have batches for."""
    batch_counts = apply_batch_scope(
        db.query(Batch.customer_id, func.count(Batch.id)).group_by(Batch.customer_id),
        scope,
    ).all()
    counts = {customer_id: count for customer_id, count in batch_counts}

    query = db.query(Customer).order_by(Customer.name.asc())
    if not scope.unrestricted:
        if not counts:
            return []
        query = query.filter(Customer.id.in_(counts.keys()))

    return [
        {
            "id": customer.id,
            "name": customer.name,
            "country": customer.country,
            "contact_person": customer.contact_person,
            "email": customer.email,
            "batchCount": counts.get(customer.id, 0),
        }
        for customer in query.all()
    ]


def batch_detail_use_case(*, db: Session, batch_id: UUID) -> dict:
    """Full nested batch record with derived counts."""
    batch = _get_batch_or_404(
        db=db,
        batch_id=batch_id,
        options=(
            selectinload(Batch.customer),
            selectinload(Batch.project),
            selectinload(Batch.process_steps),
            selectinload(Batch.components),
            selectinload(Batch.samples).selectinload(Sample.test_results),
            selectinload(Batch.deviations),
            selectinload(Batch.equipment_events).selectinload(EquipmentEvent.equipment),
        ),
    )

    steps = sorted(batch.process_steps, key=lambda step: (step.step_sequence, str(step.id)))
    deviations = sorted(batch.deviations, key=lambda dev: dev.deviation_no)
    events = sorted(batch.equipment_events, key=lambda event: event.timestamp)
    display, color = display_status(batch.status)
    customer = batch.customer
    project = batch.project

    return {
        "id": batch.id,
        "api_batch_id": batch.api_batch_id,
        "product_name": batch.product_name,
        "plant_location": batch.plant_location,
        "batch_size": batch.batch_size,
        "batch_size_unit": batch.batch_size_unit,
        "target_yield": batch.target_yield,
        "actual_yield": batch.actual_yield,
        "datasource": batch.datasource,
        "status": batch.status,
        "displayStatus": display,
        "statusColor": color,
        "targeted_end_date": batch.targeted_end_date,
        "released_at": batch.released_at,
        "released_by": batch.released_by,
        "release_notes": batch.release_notes,
        "created_at": batch.created_at,
        "updated_at": batch.updated_at,
        "customer": {
            "id": customer.id,
            "name": customer.name,
            "country": customer.country,
        } if customer else None,
        "project": {
            "id": project.id,
            "project_code": project.project_code,
            "project_name": project.project_name,
            "status": project.status,
        } if project else None,
        "processSteps": [process_step_view(step) for step in steps],
        "components": [component_view(component) for component in batch.components],
        "samples": [sample_view(sample) for sample in batch.samples],
        "deviations": [deviation_view(deviation) for deviation in deviations],
        "equipmentEvents": [
            {
                **equipment_event_view(event),
                "equipment_name": event.equipment.name if event.equipment else None,
            }
            for event in events
        ],
        "totalProcessSteps": len(steps),
        "totalComponents": len(batch.components),
        "totalSamples": len(batch.samples),
        "totalDeviations": len(deviations),
        "openDeviations": sum(1 for dev in deviations if dev.status in OPEN_DEVIATION_STATUSES),
    }


def _quantity_label(component: BatchComponent) -> str:
    quantity = component.quantity_used if component.quantity_used is not None else 0
    if float(quantity).is_integer():
        quantity = int(quantity)
    return f"{quantity} {component.uom or 'units'}"


def batch_genealogy_use_case(*, db: Session, batch_id: UUID) -> dict:
    """One row per (process step, component consumed in that step), in step order.

    A component without a step assignment counts as consumed by every step
    of its batch.
    """
    batch = _get_batch_or_404(db=db, batch_id=batch_id)

    steps = (
        db.query(ProcessStep)
        .filter(ProcessStep.batch_id == batch.id)
        .order_by(ProcessStep.step_sequence.asc(), ProcessStep.start_timestamp.asc())
        .all()
    )
    components = (
        db.query(BatchComponent)
        .filter(BatchComponent.batch_id == batch.id)
        .order_by(BatchComponent.usage_ts.asc(), BatchComponent.material_code.asc())
        .all()
    )
    component_ids = [component.id for component in components]

    deviations_by_component: dict[UUID, Deviation] = {}
    samples_by_component: dict[UUID, list[Sample]] = defaultdict(list)
    if component_ids:
        linked = (
            db.query(Deviation)
            .filter(
                Deviation.linked_entity_type == "BatchComponent",
                Deviation.linked_batch_component_id.in_(component_ids),
            )
            .order_by(Deviation.raised_at.asc())
            .all()
        )
        for deviation in linked:
            deviations_by_component.setdefault(deviation.linked_batch_component_id, deviation)

        samples = (
            db.query(Sample)
            .options(selectinload(Sample.test_results))
            .filter(Sample.batch_component_id.in_(component_ids))
            .order_by(Sample.sample_id.asc())
            .all()
        )
        for sample in samples:
            samples_by_component[sample.batch_component_id].append(sample)

    rows = []
    for step in steps:
        for component in components:
            if component.process_step_id not in (None, step.id):
                continue
            deviation = deviations_by_component.get(component.id)
            rows.append(
                {
                    "processName": f"{step.step_name} ({batch.api_batch_id})",
                    "stepSequence": step.step_sequence,
                    "processStepId": step.id,
                    "componentId": component.id,
                    "materialId": component.material_code,
                    "materialName": component.component_name,
                    "componentType": component.component_type,
                    "lotNumber": component.internal_lot_id,
                    "supplier": component.supplier_name or "Internal",
                    "supplierLotId": component.supplier_lot_id,
                    "quantityUsed": _quantity_label(component),
                    "coaReport": "Yes" if component.coa_received else "No",
                    "coaReceived": bool(component.coa_received),
                    "qcStatus": component.qc_status,
                    "batchDescription": component_description(component.component_type),
                    "associatedBatch": component.component_batch_id,
                    "sourceBatchId": component.source_batch_id,
                    "hasDeviationLink": deviation is not None,
                    "deviationInfo": {
                        "id": deviation.id,
                        "deviation_no": deviation.deviation_no,
                        "title": deviation.title,
                        "severity": deviation.severity,
                        "status": deviation.status,
                    } if deviation else None,
                    "samples": [
                        {
                            "id": sample.id,
                            "sample_id": sample.sample_id,
                            "sample_type": sample.sample_type,
                            "collected_at": sample.collected_at,
                            "status": sample_status(sample.test_results),
                            "testCount": len(sample.test_results),
                        }
                        for sample in samples_by_component.get(component.id, [])
                    ],
                }
            )

    return {
        "batch": batch_brief(batch),
        "genealogy": rows,
        "summary": {
            "totalEntries": len(rows),
            "processSteps": len(steps),
            "deviationLinkedBatches": sum(1 for row in rows if row["hasDeviationLink"]),
        },
    }


def batch_lineage_use_case(*, db: Session, batch_id: UUID) -> dict:
    """Upstream materials of a batch and the downstream batches that consumed it."""
    batch = _get_batch_or_404(db=db, batch_id=batch_id)

    components = (
        db.query(BatchComponent)
        .options(selectinload(BatchComponent.source_batch))
        .filter(BatchComponent.batch_id == batch.id)
        .order_by(BatchComponent.usage_ts.asc(), BatchComponent.material_code.asc())
        .all()
    )
    child_batch_ids = db.query(BatchComponent.batch_id).filter(BatchComponent.source_batch_id == batch.id)
    children = (
        db.query(Batch)
        .filter(Batch.id.in_(child_batch_ids))
        .order_by(Batch.api_batch_id.asc())
        .all()
    )

    return {
        "currentBatch": batch_brief(batch),
        "parentMaterials": [
            {**component_view(component), "sourceBatch": batch_brief(component.source_batch)}
            for component in components
        ],
        "childBatches": [batch_brief(child) for child in children],
    }
