"""Equipment views: per-batch equipment overview and single equipment history."""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..domain_errors import not_found
from ..models import (
    CALIBRATION_DUE_STATUSES,
    OPEN_DEVIATION_STATUSES,
    Batch,
    Deviation,
    Equipment,
    EquipmentEvent,
    ProcessStep,
)
from ..services.relative_time import as_utc


def _date_or_na(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d") if value else "N/A"


def _open_issue_counts(db: Session, equipment_ids: list[str]) -> dict[str, int]:
    if not equipment_ids:
        return {}
    rows = (
        db.query(Deviation.linked_equipment_id, func.count(Deviation.id))
        .filter(
            Deviation.linked_entity_type == "Equipment",
            Deviation.linked_equipment_id.in_(equipment_ids),
            Deviation.status.in_(OPEN_DEVIATION_STATUSES),
        )
        .group_by(Deviation.linked_equipment_id)
        .all()
    )
    return {equipment_id: count for equipment_id, count in rows}


def _maintenance_current(equipment: Equipment, now: datetime) -> bool:
    due = as_utc(equipment.next_maintenance_due)
    return due is None or due >= now


def equipment_overview_use_case(*, db: Session, batch_id: UUID, now: datetime | None = None) -> dict:
    """Summary metrics and a table over the equipment touched by a batch's equipment events.

    Each equipment item is counted once however many events reference it.
    """
    batch = db.query(Batch).filter(Batch.id == batch_id).first()
    if not batch:
        raise not_found("Batch")
    now = as_utc(now) or datetime.now(timezone.utc)

    events = db.query(EquipmentEvent).filter(EquipmentEvent.related_batch_id == batch.id).all()
    equipment_ids = sorted({event.equipment_id for event in events})
    equipment = (
        db.query(Equipment).filter(Equipment.id.in_(equipment_ids)).order_by(Equipment.id.asc()).all()
        if equipment_ids
        else []
    )

    steps = (
        db.query(ProcessStep)
        .filter(ProcessStep.batch_id == batch.id)
        .order_by(ProcessStep.step_sequence.asc())
        .all()
    )
    event_steps: dict[str, set[UUID]] = defaultdict(set)
    for event in events:
        if event.related_process_step_id:
            event_steps[event.equipment_id].add(event.related_process_step_id)

    def _steps_using(equipment_id: str) -> list[ProcessStep]:
        used = []
        for step in steps:
            snapshot_ids = {entry.get("equipment") for entry in (step.equipment_snapshot or [])}
            if equipment_id in snapshot_ids or step.id in event_steps[equipment_id]:
                used.append(step)
        return used

    open_issues = _open_issue_counts(db, equipment_ids)

    table = []
    for item in equipment:
        used_in = _steps_using(item.id)
        table.append(
            {
                "equipment_id": item.id,
                "name": item.name,
                "type": item.model,
                "location": item.location,
                "status": item.status,
                "last_maintenance": _date_or_na(item.last_cleaned_on),
                "last_calibrated_on": _date_or_na(item.last_calibrated_on),
                "calibration_status": item.calibration_status,
                "open_issues": open_issues.get(item.id, 0),
                "qa_approval_status": item.qa_approval_status,
                "usage_in_batch": ", ".join(
                    f"Step {step.step_sequence}: {step.step_name}" for step in used_in
                ) or "N/A",
            }
        )

    total = len(equipment)
    maintained = sum(1 for item in equipment if _maintenance_current(item, now))
    return {
        "batch": {"id": batch.id, "api_batch_id": batch.api_batch_id},
        "summaryMetrics": {
            "total_equipment": total,
            "operational": sum(1 for item in equipment if item.status == "Available"),
            "calibration_due": sum(1 for item in equipment if item.calibration_status in CALIBRATION_DUE_STATUSES),
            "open_issues": sum(open_issues.values()),
            "pm_compliance": round(maintained * 100 / total) if total else 0,
        },
        "equipmentTable": table,
    }


def equipment_detail_use_case(*, db: Session, equipment_id: str) -> dict:
    """Equipment record with its event history (newest first)."""
    equipment = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if not equipment:
        raise not_found("Equipment")

    history = (
        db.query(EquipmentEvent, Batch.api_batch_id, ProcessStep.step_name)
        .outerjoin(Batch, Batch.id == EquipmentEvent.related_batch_id)
        .outerjoin(ProcessStep, ProcessStep.id == EquipmentEvent.related_process_step_id)
        .filter(EquipmentEvent.equipment_id == equipment.id)
        .order_by(EquipmentEvent.timestamp.desc())
        .all()
    )
    open_deviations = (
        db.query(Deviation)
        .filter(
            Deviation.linked_entity_type == "Equipment",
            Deviation.linked_equipment_id == equipment.id,
            Deviation.status.in_(OPEN_DEVIATION_STATUSES),
        )
        .order_by(Deviation.raised_at.desc())
        .all()
    )

    return {
        "equipment": {
            "id": equipment.id,
            "name": equipment.name,
            "model": equipment.model,
            "location": equipment.location,
            "status": equipment.status,
            "calibration_status": equipment.calibration_status,
            "qa_approval_status": equipment.qa_approval_status,
            "last_calibrated_on": equipment.last_calibrated_on,
            "last_cleaned_on": equipment.last_cleaned_on,
            "next_maintenance_due": equipment.next_maintenance_due,
        },
        "history": [
            {
                "id": event.id,
                "event_type": event.event_type,
                "timestamp": event.timestamp,
                "notes": event.notes,
                "batch_id": event.related_batch_id,
                "api_batch_id": api_batch_id,
                "process_step_id": event.related_process_step_id,
                "step_name": step_name,
            }
            for event, api_batch_id, step_name in history
        ],
        "stats": {
            "totalEvents": len(history),
            "byType": dict(Counter(event.event_type for event, _, _ in history)),
            "batchesServed": len({event.related_batch_id for event, _, _ in history if event.related_batch_id}),
        },
        "openIssues": [
            {
                "id": deviation.id,
                "deviation_no": deviation.deviation_no,
                "title": deviation.title,
                "severity": deviation.severity,
                "status": deviation.status,
            }
            for deviation in open_deviations
        ],
    }
