"""Customer and project endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink
from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..schemas import CustomerCreate, CustomerResponse, ProjectCreate, ProjectResponse
from ..security import scope_for_caller
from ..use_cases.batch_reporting import customer_batch_summary_use_case, list_customers_use_case
from ..use_cases.records import create_customer_use_case, create_project_use_case

router = APIRouter(tags=["customers"])


@router.get("/customers")
def list_customers(
    current_user: User = Depends(PermissionChecker("customers", "view")),
    db: Session = Depends(get_db),
):
    """Customers with the number of batches visible to the caller."""
    return list_customers_use_case(db=db, scope=scope_for_caller(db, current_user))


@router.post("/customers", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: CustomerCreate,
    current_user: User = Depends(PermissionChecker("customers", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    customer = create_customer_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return CustomerResponse.model_validate(customer)


@router.get("/customers/{customer_id}/batches")
def get_customer_batches(
    customer_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    current_user: User = Depends(PermissionChecker("batches", "view")),
    db: Session = Depends(get_db),
):
    """Paginated batch summary for one customer."""
    return customer_batch_summary_use_case(
        db=db,
        customer_id=customer_id,
        scope=scope_for_caller(db, current_user),
        page=page,
        limit=limit,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    current_user: User = Depends(PermissionChecker("customers", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    project = create_project_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return ProjectResponse.model_validate(project)
