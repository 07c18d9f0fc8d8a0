"""Equipment endpoints."""
from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink
from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..schemas import EquipmentCreate, EquipmentEventCreate, EquipmentEventResponse, EquipmentResponse
from ..use_cases.equipment_reporting import equipment_detail_use_case
from ..use_cases.records import create_equipment_use_case, record_equipment_event_use_case

router = APIRouter(prefix="/equipment", tags=["equipment"])


@router.post("", response_model=EquipmentResponse, status_code=status.HTTP_201_CREATED)
def create_equipment(
    payload: EquipmentCreate,
    current_user: User = Depends(PermissionChecker("equipment", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    equipment = create_equipment_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return EquipmentResponse.model_validate(equipment)


@router.get("/{equipment_id}")
def get_equipment(
    equipment_id: str = Path(..., max_length=64),
    current_user: User = Depends(PermissionChecker("equipment", "view")),
    db: Session = Depends(get_db),
):
    """Equipment record with its event history, newest first."""
    return equipment_detail_use_case(db=db, equipment_id=equipment_id)


@router.post("/{equipment_id}/events", response_model=EquipmentEventResponse, status_code=status.HTTP_201_CREATED)
def record_equipment_event(
    payload: EquipmentEventCreate,
    equipment_id: str = Path(..., max_length=64),
    current_user: User = Depends(PermissionChecker("equipment", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    event = record_equipment_event_use_case(
        db=db, equipment_id=equipment_id, data=payload, current_user=current_user, audit_sink=audit_sink,
    )
    return EquipmentEventResponse.model_validate(event)
