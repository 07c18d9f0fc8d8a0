"""Batch endpoints: lifecycle, read views and batch-owned records."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink
from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..schemas import (
    BatchActionRequest,
    BatchCreate,
    BatchResponse,
    BatchStatusResponse,
    ComponentCreate,
    ComponentResponse,
    DeviationCreate,
    DeviationResponse,
    ForceReleaseRequest,
    ProcessStepCreate,
    ProcessStepResponse,
    ReleaseRequest,
    ReleaseResponse,
    SampleCreate,
    SampleResponse,
    StatusUpdateRequest,
)
from ..use_cases.batch_lifecycle import (
    force_release_batch_use_case,
    get_batch_status_use_case,
    perform_batch_action_use_case,
    release_batch_use_case,
    update_batch_status_use_case,
)
from ..use_cases.batch_reporting import (
    batch_detail_use_case,
    batch_genealogy_use_case,
    batch_lineage_use_case,
)
from ..use_cases.equipment_reporting import equipment_overview_use_case
from ..use_cases.quality_views import batch_deviations_capa_use_case, batch_samples_tests_use_case
from ..use_cases.records import (
    add_batch_component_use_case,
    add_process_step_use_case,
    add_sample_use_case,
    create_batch_use_case,
    raise_deviation_use_case,
)

router = APIRouter(prefix="/batches", tags=["batches"])


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(
    payload: BatchCreate,
    current_user: User = Depends(PermissionChecker("batches", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    batch = create_batch_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return BatchResponse.model_validate(batch)


@router.get("/{batch_id}")
def get_batch_detail(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("batches", "view")),
    db: Session = Depends(get_db),
):
    """Full nested batch record with derived counts."""
    return batch_detail_use_case(db=db, batch_id=batch_id)


@router.get("/{batch_id}/status", response_model=BatchStatusResponse)
def get_batch_status(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("batches", "view")),
    db: Session = Depends(get_db),
):
    return BatchStatusResponse.model_validate(get_batch_status_use_case(db=db, batch_id=batch_id))


@router.put("/{batch_id}/status", response_model=BatchResponse)
def update_batch_status(
    batch_id: UUID,
    payload: StatusUpdateRequest,
    current_user: User = Depends(PermissionChecker("batches", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Guarded status change. Released runs the same gate as /release."""
    batch = update_batch_status_use_case(
        db=db,
        batch_id=batch_id,
        new_status=payload.status,
        current_user=current_user,
        audit_sink=audit_sink,
        notes=payload.notes,
    )
    return BatchResponse.model_validate(batch)


@router.put("/{batch_id}/release", response_model=ReleaseResponse)
def release_batch(
    batch_id: UUID,
    payload: ReleaseRequest | None = None,
    current_user: User = Depends(PermissionChecker("batches", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Release a batch with no open deviations and no pending tests."""
    return release_batch_use_case(
        db=db,
        batch_id=batch_id,
        current_user=current_user,
        audit_sink=audit_sink,
        notes=payload.notes if payload else None,
    )


@router.put("/{batch_id}/force-release", response_model=ReleaseResponse)
def force_release_batch(
    batch_id: UUID,
    payload: ForceReleaseRequest,
    current_user: User = Depends(PermissionChecker("batches", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Release bypassing the deviation/test gate; needs batches:force_release."""
    return force_release_batch_use_case(
        db=db,
        batch_id=batch_id,
        current_user=current_user,
        audit_sink=audit_sink,
        reason=payload.reason,
        notes=payload.notes,
    )


@router.post("/{batch_id}/actions", response_model=BatchResponse)
def perform_batch_action(
    batch_id: UUID,
    payload: BatchActionRequest,
    current_user: User = Depends(PermissionChecker("batches", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    batch = perform_batch_action_use_case(
        db=db,
        batch_id=batch_id,
        action=payload.action,
        current_user=current_user,
        audit_sink=audit_sink,
        notes=payload.notes,
    )
    return BatchResponse.model_validate(batch)


@router.get("/{batch_id}/genealogy-table")
def get_genealogy_table(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("batches", "view")),
    db: Session = Depends(get_db),
):
    """One row per component used in each process step, in step order."""
    return batch_genealogy_use_case(db=db, batch_id=batch_id)


@router.get("/{batch_id}/lineage")
def get_lineage(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("batches", "view")),
    db: Session = Depends(get_db),
):
    return batch_lineage_use_case(db=db, batch_id=batch_id)


@router.get("/{batch_id}/equipment")
def get_batch_equipment(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("equipment", "view")),
    db: Session = Depends(get_db),
):
    return equipment_overview_use_case(db=db, batch_id=batch_id)


@router.get("/{batch_id}/samples-tests")
def get_samples_tests(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("quality", "view")),
    db: Session = Depends(get_db),
):
    return batch_samples_tests_use_case(db=db, batch_id=batch_id)


@router.get("/{batch_id}/deviations-capa")
def get_deviations_capa(
    batch_id: UUID,
    current_user: User = Depends(PermissionChecker("quality", "view")),
    db: Session = Depends(get_db),
):
    return batch_deviations_capa_use_case(db=db, batch_id=batch_id)


@router.post("/{batch_id}/process-steps", response_model=ProcessStepResponse, status_code=status.HTTP_201_CREATED)
def add_process_step(
    batch_id: UUID,
    payload: ProcessStepCreate,
    current_user: User = Depends(PermissionChecker("batches", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    step = add_process_step_use_case(
        db=db, batch_id=batch_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return ProcessStepResponse.model_validate(step)


@router.post("/{batch_id}/components", response_model=ComponentResponse, status_code=status.HTTP_201_CREATED)
def add_component(
    batch_id: UUID,
    payload: ComponentCreate,
    current_user: User = Depends(PermissionChecker("batches", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    component = add_batch_component_use_case(
        db=db, batch_id=batch_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return ComponentResponse.model_validate(component)


@router.post("/{batch_id}/samples", response_model=SampleResponse, status_code=status.HTTP_201_CREATED)
def add_sample(
    batch_id: UUID,
    payload: SampleCreate,
    current_user: User = Depends(PermissionChecker("quality", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    sample = add_sample_use_case(
        db=db, batch_id=batch_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return SampleResponse.model_validate(sample)


@router.post("/{batch_id}/deviations", response_model=DeviationResponse, status_code=status.HTTP_201_CREATED)
def raise_deviation(
    batch_id: UUID,
    payload: DeviationCreate,
    current_user: User = Depends(PermissionChecker("quality", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    deviation = raise_deviation_use_case(
        db=db, batch_id=batch_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return DeviationResponse.model_validate(deviation)
