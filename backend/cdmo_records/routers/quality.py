"""Quality records: samples, test results, deviations, CAPA and step completion."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink
from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..schemas import (
    CapaCreate,
    CapaResponse,
    DeviationClose,
    DeviationResponse,
    ProcessStepResponse,
    StepCompleteRequest,
    TestResultCreate,
    TestResultResponse,
    TestResultUpdate,
)
from ..use_cases.quality_views import deviation_detail_use_case, sample_detail_use_case
from ..use_cases.records import (
    add_test_result_use_case,
    close_deviation_use_case,
    complete_process_step_use_case,
    create_capa_use_case,
    record_test_result_use_case,
)

router = APIRouter(tags=["quality"])


@router.get("/samples/{sample_id}")
def get_sample(
    sample_id: UUID,
    current_user: User = Depends(PermissionChecker("quality", "view")),
    db: Session = Depends(get_db),
):
    return sample_detail_use_case(db=db, sample_id=sample_id)


@router.post(
    "/samples/{sample_id}/test-results",
    response_model=TestResultResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_test_result(
    sample_id: UUID,
    payload: TestResultCreate,
    current_user: User = Depends(PermissionChecker("quality", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    result = add_test_result_use_case(
        db=db, sample_id=sample_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return TestResultResponse.model_validate(result)


@router.put("/test-results/{test_result_id}", response_model=TestResultResponse)
def record_test_result(
    test_result_id: UUID,
    payload: TestResultUpdate,
    current_user: User = Depends(PermissionChecker("quality", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Record the outcome of a test."""
    result = record_test_result_use_case(
        db=db, test_result_id=test_result_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return TestResultResponse.model_validate(result)


@router.get("/deviations/{deviation_id}")
def get_deviation(
    deviation_id: UUID,
    current_user: User = Depends(PermissionChecker("quality", "view")),
    db: Session = Depends(get_db),
):
    return deviation_detail_use_case(db=db, deviation_id=deviation_id)


@router.put("/deviations/{deviation_id}/close", response_model=DeviationResponse)
def close_deviation(
    deviation_id: UUID,
    payload: DeviationClose,
    current_user: User = Depends(PermissionChecker("quality", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Close a deviation with its resolution, optionally linking a CAPA."""
    deviation = close_deviation_use_case(
        db=db, deviation_id=deviation_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return DeviationResponse.model_validate(deviation)


@router.post("/capas", response_model=CapaResponse, status_code=status.HTTP_201_CREATED)
def create_capa(
    payload: CapaCreate,
    current_user: User = Depends(PermissionChecker("quality", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    capa = create_capa_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return CapaResponse.model_validate(capa)


@router.put("/process-steps/{step_id}/complete", response_model=ProcessStepResponse)
def complete_process_step(
    step_id: UUID,
    payload: StepCompleteRequest | None = None,
    current_user: User = Depends(PermissionChecker("batches", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    step = complete_process_step_use_case(
        db=db,
        step_id=step_id,
        data=payload or StepCompleteRequest(),
        current_user=current_user,
        audit_sink=audit_sink,
    )
    return ProcessStepResponse.model_validate(step)
