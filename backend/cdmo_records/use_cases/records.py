"""Create/update use-cases for batch records. Every attempt is audited."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..audit import AuditSink, record_write
from ..domain_errors import DomainError, conflict, not_found, validation
from ..models import (
    CAPA,
    Batch,
    BatchComponent,
    Customer,
    Deviation,
    Equipment,
    EquipmentEvent,
    ProcessStep,
    Project,
    Sample,
    TestResult,
    User,
)
from ..schemas import (
    BatchCreate,
    CapaCreate,
    ComponentCreate,
    CustomerCreate,
    DeviationClose,
    DeviationCreate,
    EquipmentCreate,
    EquipmentEventCreate,
    LinkedEntityIn,
    ProcessStepCreate,
    ProjectCreate,
    SampleCreate,
    StepCompleteRequest,
    TestResultCreate,
    TestResultUpdate,
)

DUPLICATE_KEY = "DUPLICATE_KEY"

# Linked entity type -> (payload attribute, Deviation column, model).
_LINK_TARGETS = {
    "Batch": ("batch_id", "linked_batch_id", Batch),
    "Sample": ("sample_id", "linked_sample_id", Sample),
    "TestResult": ("test_result_id", "linked_test_result_id", TestResult),
    "ProcessStep": ("process_step_id", "linked_process_step_id", ProcessStep),
    "BatchComponent": ("batch_component_id", "linked_batch_component_id", BatchComponent),
    "Equipment": ("equipment_id", "linked_equipment_id", Equipment),
}


class _WriteOutcome:
    """Mutable holder the audited block fills in with the written entity."""

    def __init__(self, entity_id: Any = None):
        self.entity_id = entity_id
        self.details: dict[str, Any] = {}


@contextmanager
def _audited_write(
    *,
    db: Session,
    audit_sink: AuditSink,
    actor: User,
    action: str,
    entity_type: str,
    entity_id: Any = None,
) -> Iterator[_WriteOutcome]:
    outcome = _WriteOutcome(entity_id)
    try:
        yield outcome
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=outcome.entity_id,
            outcome=exc.code,
            details=exc.details,
        )
        raise
    except IntegrityError:
        db.rollback()
        record_write(
            audit_sink,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=outcome.entity_id,
            outcome=DUPLICATE_KEY,
        )
        raise
    record_write(
        audit_sink,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=outcome.entity_id,
        details=outcome.details,
    )


def _ensure_unique(db: Session, column, value, *, field: str) -> None:
    if db.query(column).filter(column == value).first() is not None:
        raise conflict(
            DUPLICATE_KEY,
            f"{field} '{value}' already exists",
            details={"field": field, "value": value},
        )


def _get_or_404(db: Session, model, entity_id, entity: str):
    instance = db.query(model).filter(model.id == entity_id).first()
    if instance is None:
        raise not_found(entity)
    return instance


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_customer_use_case(
    *,
    db: Session,
    data: CustomerCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Customer:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="customer_created", entity_type="Customer",
    ) as outcome:
        customer = Customer(**data.model_dump())
        db.add(customer)
        db.commit()
        db.refresh(customer)
        outcome.entity_id = customer.id
        outcome.details = {"name": customer.name}
    return customer


def create_project_use_case(
    *,
    db: Session,
    data: ProjectCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Project:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="project_created", entity_type="Project",
    ) as outcome:
        _get_or_404(db, Customer, data.customer_id, "Customer")
        _ensure_unique(db, Project.project_code, data.project_code, field="project_code")
        project = Project(**data.model_dump())
        db.add(project)
        db.commit()
        db.refresh(project)
        outcome.entity_id = project.id
        outcome.details = {"project_code": project.project_code}
    return project


def create_batch_use_case(
    *,
    db: Session,
    data: BatchCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Batch:
    """Create a batch under a project; the customer is taken from the project.

    Components recorded earlier that name this batch by api_batch_id are
    linked to it here, so lineage does not depend on creation order.
    """
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="batch_created", entity_type="Batch",
    ) as outcome:
        project = _get_or_404(db, Project, data.project_id, "Project")
        _ensure_unique(db, Batch.api_batch_id, data.api_batch_id, field="api_batch_id")
        batch = Batch(customer_id=project.customer_id, **data.model_dump())
        db.add(batch)
        db.flush()
        linked = db.execute(
            update(BatchComponent)
            .where(
                BatchComponent.component_batch_id == batch.api_batch_id,
                BatchComponent.source_batch_id.is_(None),
                BatchComponent.batch_id != batch.id,
            )
            .values(source_batch_id=batch.id)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        db.refresh(batch)
        outcome.entity_id = batch.id
        outcome.details = {
            "api_batch_id": batch.api_batch_id,
            "status": batch.status,
            "linked_components": linked,
        }
    return batch


def add_process_step_use_case(
    *,
    db: Session,
    batch_id: UUID,
    data: ProcessStepCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> ProcessStep:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="process_step_added", entity_type="ProcessStep",
    ) as outcome:
        batch = _get_or_404(db, Batch, batch_id, "Batch")
        taken = (
            db.query(ProcessStep.id)
            .filter(ProcessStep.batch_id == batch.id, ProcessStep.step_sequence == data.step_sequence)
            .first()
        )
        if taken is not None:
            raise conflict(
                DUPLICATE_KEY,
                f"Step sequence {data.step_sequence} already exists for this batch",
                details={"field": "step_sequence", "value": data.step_sequence},
            )
        if data.end_timestamp and data.start_timestamp and data.end_timestamp < data.start_timestamp:
            raise validation("PROCESS_STEP_INVALID_TIMESTAMPS", "end_timestamp precedes start_timestamp")

        fields = data.model_dump(exclude={"equipment"})
        step = ProcessStep(
            batch_id=batch.id,
            equipment_snapshot=[item.model_dump(mode="json") for item in data.equipment],
            **fields,
        )
        db.add(step)
        db.commit()
        db.refresh(step)
        outcome.entity_id = step.id
        outcome.details = {"batch_id": str(batch.id), "step_sequence": step.step_sequence}
    return step


def complete_process_step_use_case(
    *,
    db: Session,
    step_id: UUID,
    data: StepCompleteRequest,
    current_user: User,
    audit_sink: AuditSink,
) -> ProcessStep:
    """Stamp the end timestamp of a step (now unless given)."""
    with _audited_write(
        db=db,
        audit_sink=audit_sink,
        actor=current_user,
        action="process_step_completed",
        entity_type="ProcessStep",
        entity_id=step_id,
    ) as outcome:
        step = _get_or_404(db, ProcessStep, step_id, "Process step")
        if step.end_timestamp is not None:
            raise conflict("PROCESS_STEP_ALREADY_COMPLETED", "Process step is already completed")
        end = data.end_timestamp or _now()
        if step.start_timestamp is None:
            step.start_timestamp = end
        step.end_timestamp = end
        db.commit()
        db.refresh(step)
        outcome.details = {"batch_id": str(step.batch_id), "end_timestamp": end}
    return step


def add_batch_component_use_case(
    *,
    db: Session,
    batch_id: UUID,
    data: ComponentCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> BatchComponent:
    """Record a consumed material, resolving the upstream batch from component_batch_id."""
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="component_added", entity_type="BatchComponent",
    ) as outcome:
        batch = _get_or_404(db, Batch, batch_id, "Batch")
        if data.process_step_id is not None:
            step = _get_or_404(db, ProcessStep, data.process_step_id, "Process step")
            if step.batch_id != batch.id:
                raise validation(
                    "PROCESS_STEP_NOT_IN_BATCH",
                    "Process step does not belong to this batch",
                    details={"process_step_id": str(step.id)},
                )

        source_batch_id = None
        if data.component_batch_id:
            source = db.query(Batch.id).filter(Batch.api_batch_id == data.component_batch_id).first()
            if source is not None:
                if source[0] == batch.id:
                    raise validation("COMPONENT_SELF_REFERENCE", "A batch cannot consume itself")
                source_batch_id = source[0]

        component = BatchComponent(batch_id=batch.id, source_batch_id=source_batch_id, **data.model_dump())
        db.add(component)
        db.commit()
        db.refresh(component)
        outcome.entity_id = component.id
        outcome.details = {
            "batch_id": str(batch.id),
            "component_batch_id": component.component_batch_id,
            "source_batch_id": str(source_batch_id) if source_batch_id else None,
        }
    return component


def add_sample_use_case(
    *,
    db: Session,
    batch_id: UUID,
    data: SampleCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Sample:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="sample_collected", entity_type="Sample",
    ) as outcome:
        batch = _get_or_404(db, Batch, batch_id, "Batch")
        _ensure_unique(db, Sample.sample_id, data.sample_id, field="sample_id")
        if data.batch_component_id is not None:
            component = _get_or_404(db, BatchComponent, data.batch_component_id, "Batch component")
            if component.batch_id != batch.id:
                raise validation("COMPONENT_NOT_IN_BATCH", "Batch component does not belong to this batch")

        fields = data.model_dump()
        fields["collected_at"] = fields["collected_at"] or _now()
        sample = Sample(batch_id=batch.id, collected_by=current_user.id, **fields)
        db.add(sample)
        db.commit()
        db.refresh(sample)
        outcome.entity_id = sample.id
        outcome.details = {"batch_id": str(batch.id), "sample_id": sample.sample_id}
    return sample


def add_test_result_use_case(
    *,
    db: Session,
    sample_id: UUID,
    data: TestResultCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> TestResult:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="test_result_added", entity_type="TestResult",
    ) as outcome:
        sample = _get_or_404(db, Sample, sample_id, "Sample")
        _ensure_unique(db, TestResult.test_id, data.test_id, field="test_id")
        fields = data.model_dump(exclude={"reagents"})
        result = TestResult(
            sample_record_id=sample.id,
            tested_by=current_user.id,
            reagents=[reagent.model_dump(mode="json") for reagent in data.reagents],
            **fields,
        )
        db.add(result)
        db.commit()
        db.refresh(result)
        outcome.entity_id = result.id
        outcome.details = {"sample_id": sample.sample_id, "test_id": result.test_id, "result": result.result}
    return result


def record_test_result_use_case(
    *,
    db: Session,
    test_result_id: UUID,
    data: TestResultUpdate,
    current_user: User,
    audit_sink: AuditSink,
) -> TestResult:
    """Record the outcome of a test; only unset fields are left untouched."""
    with _audited_write(
        db=db,
        audit_sink=audit_sink,
        actor=current_user,
        action="test_result_recorded",
        entity_type="TestResult",
        entity_id=test_result_id,
    ) as outcome:
        result = _get_or_404(db, TestResult, test_result_id, "Test result")
        previous = result.result
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(result, key, value)
        if result.tested_at is None and result.result not in ("Pending", "In-Progress"):
            result.tested_at = _now()
        result.tested_by = current_user.id
        db.commit()
        db.refresh(result)
        outcome.details = {"from": previous, "to": result.result}
    return result


def _resolve_linked_entity(db: Session, batch: Batch, link: LinkedEntityIn) -> dict[str, Any]:
    attribute, column, model = _LINK_TARGETS[link.entity_type]
    target_id = getattr(link, attribute)
    if link.entity_type == "Batch" and target_id is None:
        target_id = batch.id
    if target_id is None:
        raise validation(
            "DEVIATION_INVALID_LINK",
            f"linked_entity.{attribute} is required for entity_type {link.entity_type}",
            details={"entity_type": link.entity_type, "field": attribute},
        )
    if db.query(model.id).filter(model.id == target_id).first() is None:
        raise not_found(link.entity_type, code="DEVIATION_LINK_NOT_FOUND")
    return {"linked_entity_type": link.entity_type, column: target_id}


def raise_deviation_use_case(
    *,
    db: Session,
    batch_id: UUID,
    data: DeviationCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Deviation:
    """Raise a deviation against a batch, optionally linked to one of its records."""
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="deviation_raised", entity_type="Deviation",
    ) as outcome:
        batch = _get_or_404(db, Batch, batch_id, "Batch")
        _ensure_unique(db, Deviation.deviation_no, data.deviation_no, field="deviation_no")
        link_fields = _resolve_linked_entity(db, batch, data.linked_entity) if data.linked_entity else {}
        deviation = Deviation(
            batch_id=batch.id,
            raised_by=current_user.id,
            raised_at=_now(),
            **data.model_dump(exclude={"linked_entity"}),
            **link_fields,
        )
        db.add(deviation)
        db.commit()
        db.refresh(deviation)
        outcome.entity_id = deviation.id
        outcome.details = {
            "batch_id": str(batch.id),
            "deviation_no": deviation.deviation_no,
            "severity": deviation.severity,
        }
    return deviation


def close_deviation_use_case(
    *,
    db: Session,
    deviation_id: UUID,
    data: DeviationClose,
    current_user: User,
    audit_sink: AuditSink,
) -> Deviation:
    """Close a deviation and write its resolution."""
    with _audited_write(
        db=db,
        audit_sink=audit_sink,
        actor=current_user,
        action="deviation_closed",
        entity_type="Deviation",
        entity_id=deviation_id,
    ) as outcome:
        deviation = _get_or_404(db, Deviation, deviation_id, "Deviation")
        if deviation.status == "Closed":
            raise conflict("DEVIATION_ALREADY_CLOSED", "Deviation is already closed")
        if data.capa_id is not None:
            _get_or_404(db, CAPA, data.capa_id, "CAPA")

        deviation.status = "Closed"
        deviation.resolution_action_taken = data.action_taken
        deviation.resolution_closed_by = current_user.id
        deviation.resolution_closed_at = _now()
        deviation.resolution_capa_id = data.capa_id
        db.commit()
        db.refresh(deviation)
        outcome.details = {
            "batch_id": str(deviation.batch_id),
            "capa_id": str(data.capa_id) if data.capa_id else None,
        }
    return deviation


def create_capa_use_case(
    *,
    db: Session,
    data: CapaCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> CAPA:
    with _audited_write(
        db=db, audit_sink=audit_sink, actor=current_user, action="capa_created", entity_type="CAPA",
    ) as outcome:
        if data.owner_id is not None:
            _get_or_404(db, User, data.owner_id, "User")
        capa = CAPA(**data.model_dump())
        if capa.status == "Closed":
            capa.closed_at = _now()
        db.add(capa)
        db.commit()
        db.refresh(capa)
        outcome.entity_id = capa.id
        outcome.details = {"title": capa.title, "status": capa.status}
    return capa


def create_equipment_use_case(
    *,
    db: Session,
    data: EquipmentCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Equipment:
    with _audited_write(
        db=db,
        audit_sink=audit_sink,
        actor=current_user,
        action="equipment_created",
        entity_type="Equipment",
        entity_id=data.id,
    ) as outcome:
        _ensure_unique(db, Equipment.id, data.id, field="id")
        equipment = Equipment(**data.model_dump())
        db.add(equipment)
        db.commit()
        db.refresh(equipment)
        outcome.details = {"name": equipment.name}
    return equipment


def record_equipment_event_use_case(
    *,
    db: Session,
    equipment_id: str,
    data: EquipmentEventCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> EquipmentEvent:
    """Log a usage/calibration/cleaning/fault event, optionally tied to a batch step."""
    with _audited_write(
        db=db,
        audit_sink=audit_sink,
        actor=current_user,
        action="equipment_event_recorded",
        entity_type="EquipmentEvent",
    ) as outcome:
        equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
        if data.related_batch_id is not None:
            _get_or_404(db, Batch, data.related_batch_id, "Batch")
        if data.related_process_step_id is not None:
            step = _get_or_404(db, ProcessStep, data.related_process_step_id, "Process step")
            if data.related_batch_id is not None and step.batch_id != data.related_batch_id:
                raise validation("PROCESS_STEP_NOT_IN_BATCH", "Process step does not belong to the related batch")

        fields = data.model_dump()
        fields["timestamp"] = fields["timestamp"] or _now()
        event = EquipmentEvent(equipment_id=equipment.id, recorded_by=current_user.id, **fields)
        if event.related_batch_id is None and data.related_process_step_id is not None:
            event.related_batch_id = step.batch_id
        if event.event_type == "Calibration":
            equipment.last_calibrated_on = event.timestamp
            equipment.calibration_status = "Valid"
        elif event.event_type == "Cleaning":
            equipment.last_cleaned_on = event.timestamp
        elif event.event_type == "Fault":
            equipment.status = "Faulted"
        db.add(event)
        db.commit()
        db.refresh(event)
        outcome.entity_id = event.id
        outcome.details = {"equipment_id": equipment.id, "event_type": event.event_type}
    return event
