"""Administration endpoints: first-admin bootstrap, users, roles and assignments."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink
from ..auth import PermissionChecker
from ..database import get_db
from ..models import User
from ..schemas import (
    AssignUserRequest,
    AuthUserResponse,
    RegisterAdminRequest,
    RoleCreate,
    RoleResponse,
    UpdatePermissionsRequest,
    UserCreate,
    UserResponse,
)
from ..use_cases.admin_accounts import (
    assign_user_use_case,
    auth_user_view,
    create_first_admin_use_case,
    create_role_use_case,
    create_user_use_case,
    list_roles_use_case,
    list_users_use_case,
    update_user_role_permissions_use_case,
)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register_first_admin(
    payload: RegisterAdminRequest,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Create the first Admin user. Only works while no admin exists."""
    user = create_first_admin_use_case(db=db, data=payload, audit_sink=audit_sink)
    return UserResponse.model_validate(user)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    current_user: User = Depends(PermissionChecker("users", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    user = create_user_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return UserResponse.model_validate(user)


@router.get("/users", response_model=list[AuthUserResponse])
def list_users(
    current_user: User = Depends(PermissionChecker("users", "view")),
    db: Session = Depends(get_db),
):
    """All users with their grants and project assignments."""
    return [AuthUserResponse.model_validate(auth_user_view(user)) for user in list_users_use_case(db=db)]


@router.post("/assign-users", response_model=AuthUserResponse)
def assign_user(
    payload: AssignUserRequest,
    current_user: User = Depends(PermissionChecker("users", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Upsert a user's project assignments, optionally changing their role."""
    user = assign_user_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return AuthUserResponse.model_validate(auth_user_view(user))


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    current_user: User = Depends(PermissionChecker("roles", "view")),
    db: Session = Depends(get_db),
):
    return [RoleResponse.model_validate(role) for role in list_roles_use_case(db=db)]


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    current_user: User = Depends(PermissionChecker("roles", "add_delete")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    role = create_role_use_case(db=db, data=payload, current_user=current_user, audit_sink=audit_sink)
    return RoleResponse.model_validate(role)


@router.post("/users/{user_id}/permissions", response_model=RoleResponse)
def update_user_permissions(
    user_id: UUID,
    payload: UpdatePermissionsRequest,
    current_user: User = Depends(PermissionChecker("roles", "edit")),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Replace the grants of the role the user holds."""
    role = update_user_role_permissions_use_case(
        db=db,
        user_id=user_id,
        data=payload,
        current_user=current_user,
        audit_sink=audit_sink,
    )
    return RoleResponse.model_validate(role)
