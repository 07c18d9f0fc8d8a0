"""Audit log listing."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import PermissionChecker
from ..config import settings
from ..database import get_db
from ..models import AuditLog, User
from ..schemas import AuditLogResponse

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=list[AuditLogResponse])
def list_logs(
    limit: int = Query(settings.LOG_LIST_DEFAULT_LIMIT, ge=1, le=1000),
    current_user: User = Depends(PermissionChecker("logs", "view")),
    db: Session = Depends(get_db),
):
    """Most recent audit records, newest first."""
    rows = (
        db.query(AuditLog)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )
    return [AuditLogResponse.model_validate(row) for row in rows]
