"""Dashboard endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..security import scope_for_caller
from ..use_cases.dashboard_reporting import customer_batch_dashboard_use_case, dashboard_summary_use_case

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/summary")
def get_dashboard_summary(
    current_user: User = Depends(PermissionChecker("dashboard", "view")),
    db: Session = Depends(get_db),
):
    """Global counters: active customers and batches, open deviations, lab samples, released today."""
    return dashboard_summary_use_case(db=db)


@router.get("/customers")
def get_customer_dashboard(
    current_user: User = Depends(PermissionChecker("dashboard", "view")),
    db: Session = Depends(get_db),
):
    """Per-customer batch counts limited to the caller's visible batches."""
    scope = scope_for_caller(db, current_user)
    return customer_batch_dashboard_use_case(db=db, scope=scope)
