"""User, role and project-assignment administration."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from ..audit import AuditSink, record_write
from ..auth import (
    ACTIONS,
    ADMIN_ROLE_NAME,
    DEFAULT_ROLE_DESCRIPTIONS,
    DEFAULT_ROLE_GRANTS,
    FORCE_RELEASE,
    RESOURCES,
    VIEW_ALL_BATCHES,
    grants_from_flags,
    hash_password,
    user_capabilities,
    verify_password,
)
from ..domain_errors import DomainError, conflict, not_found, validation
from ..models import Project, ProjectAssignment, Role, RolePermission, User
from ..schemas import (
    AssignUserRequest,
    PermissionFlags,
    RegisterAdminRequest,
    RoleCreate,
    UpdatePermissionsRequest,
    UserCreate,
)

logger = logging.getLogger(__name__)

_SPECIAL_GRANTS = {VIEW_ALL_BATCHES, FORCE_RELEASE}


def _user_query(db: Session):
    return db.query(User).options(
        selectinload(User.role).selectinload(Role.permissions),
        selectinload(User.project_assignments),
    )


def auth_user_view(user: User) -> dict:
    """User with role, flattened grants and project assignments."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "department": user.department,
        "is_active": user.is_active,
        "last_login": user.last_login,
        "created_at": user.created_at,
        "role": user.role,
        "permissions": sorted(f"{resource}:{action}" for resource, action in user_capabilities(user)),
        "project_assignments": user.project_assignments,
    }


def _parse_capability(value: str) -> tuple[str, str]:
    resource, _, action = value.partition(":")
    grant = (resource.strip(), action.strip())
    valid = grant in _SPECIAL_GRANTS or (grant[0] in RESOURCES and grant[1] in ACTIONS)
    if not valid:
        raise validation(
            "INVALID_CAPABILITY",
            f"Unknown capability '{value}'",
            details={"capability": value},
        )
    return grant


def _grants_from_request(permissions: list[PermissionFlags], capabilities: list[str]) -> set[tuple[str, str]]:
    unknown = sorted({row.resource for row in permissions if row.resource not in RESOURCES})
    if unknown:
        raise validation(
            "INVALID_CAPABILITY",
            f"Unknown resource(s): {', '.join(unknown)}",
            details={"resources": unknown},
        )
    grants = grants_from_flags([row.model_dump() for row in permissions])
    grants.update(_parse_capability(value) for value in capabilities)
    return grants


def _set_role_grants(role: Role, grants: set[tuple[str, str]]) -> None:
    role.permissions = [RolePermission(resource=resource, action=action) for resource, action in sorted(grants)]


def _ensure_unique_account(db: Session, *, username: str, email: str) -> None:
    existing = (
        db.query(User.username, User.email)
        .filter(or_(func.lower(User.username) == username.lower(), func.lower(User.email) == email.lower()))
        .first()
    )
    if existing is None:
        return
    field = "username" if existing.username.lower() == username.lower() else "email"
    raise conflict("DUPLICATE_KEY", f"A user with this {field} already exists", details={"field": field})


def seed_default_roles(db: Session) -> list[Role]:
    """Create the built-in roles that are missing. Existing roles keep their grants."""
    existing = {role.name: role for role in db.query(Role).all()}
    created = []
    for name, grants in DEFAULT_ROLE_GRANTS.items():
        if name in existing:
            continue
        role = Role(name=name, description=DEFAULT_ROLE_DESCRIPTIONS.get(name))
        _set_role_grants(role, grants)
        db.add(role)
        created.append(role)
    if created:
        db.commit()
        logger.info("Seeded roles: %s", ", ".join(role.name for role in created))
    return created


def authenticate_credentials_use_case(
    *,
    db: Session,
    identifier: str,
    password: str,
) -> User | None:
    """Match username or email and verify the password. Stamps last_login on success."""
    user = (
        _user_query(db)
        .filter(
            or_(func.lower(User.username) == identifier.lower(), func.lower(User.email) == identifier.lower()),
            User.is_active.is_(True),
        )
        .first()
    )
    if user is None or not verify_password(password, user.password_hash):
        return None
    user.last_login = datetime.now(timezone.utc)
    db.commit()
    db.refresh(user)
    return user


def find_user_by_identifier(db: Session, identifier: str) -> User | None:
    return (
        db.query(User)
        .filter(or_(func.lower(User.username) == identifier.lower(), func.lower(User.email) == identifier.lower()))
        .first()
    )


def create_first_admin_use_case(
    *,
    db: Session,
    data: RegisterAdminRequest,
    audit_sink: AuditSink,
) -> User:
    """One-time bootstrap of the first Admin account."""
    try:
        admin_role = db.query(Role).filter(Role.name == ADMIN_ROLE_NAME).first()
        if admin_role is None:
            raise validation("ADMIN_ROLE_MISSING", "Admin role does not exist. Seed roles before registering.")
        if db.query(User.id).filter(User.role_id == admin_role.id).first() is not None:
            raise conflict("ADMIN_ALREADY_EXISTS", "An admin user already exists")
        _ensure_unique_account(db, username=data.username, email=data.email)

        user = User(
            username=data.username,
            email=data.email,
            password_hash=hash_password(data.password),
            role_id=admin_role.id,
            department=data.department,
        )
        db.add(user)
        db.commit()
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=None,
            action="admin_registered",
            entity_type="User",
            entity_id=None,
            outcome=exc.code,
            details={"username": data.username},
        )
        raise

    user = _user_query(db).filter(User.id == user.id).one()
    record_write(
        audit_sink,
        actor=user,
        action="admin_registered",
        entity_type="User",
        entity_id=user.id,
        details={"username": user.username},
    )
    return user


def create_user_use_case(
    *,
    db: Session,
    data: UserCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> User:
    try:
        role = db.query(Role).filter(Role.name == data.role).first()
        if role is None:
            raise not_found("Role")
        _ensure_unique_account(db, username=data.username, email=data.email)
        user = User(
            username=data.username,
            email=data.email,
            password_hash=hash_password(data.password),
            role_id=role.id,
            department=data.department,
        )
        db.add(user)
        db.commit()
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=current_user,
            action="user_created",
            entity_type="User",
            entity_id=None,
            outcome=exc.code,
            details={"username": data.username, "role": data.role},
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="user_created",
        entity_type="User",
        entity_id=user.id,
        details={"username": user.username, "role": data.role},
    )
    return _user_query(db).filter(User.id == user.id).one()


def list_users_use_case(*, db: Session) -> list[User]:
    return _user_query(db).order_by(User.username.asc()).all()


def assign_user_use_case(
    *,
    db: Session,
    data: AssignUserRequest,
    current_user: User,
    audit_sink: AuditSink,
) -> User:
    """Upsert project assignments for a user and optionally change their role."""
    try:
        user = _user_query(db).filter(User.id == data.user_id).first()
        if user is None:
            raise not_found("User")

        if data.role is not None:
            role = db.query(Role).filter(Role.name == data.role).first()
            if role is None:
                raise not_found("Role")
            user.role_id = role.id

        project_ids = {item.project_id for item in data.assignments}
        if project_ids:
            found = {row[0] for row in db.query(Project.id).filter(Project.id.in_(project_ids)).all()}
            missing = sorted(str(project_id) for project_id in project_ids - found)
            if missing:
                raise DomainError(
                    code="PROJECT_NOT_FOUND",
                    http_status=404,
                    message="Project not found",
                    details={"project_ids": missing},
                )

        current = {assignment.project_id: assignment for assignment in user.project_assignments}
        for item in data.assignments:
            assignment = current.get(item.project_id)
            if assignment is None:
                user.project_assignments.append(
                    ProjectAssignment(project_id=item.project_id, assigned_role=item.assigned_role)
                )
            else:
                assignment.assigned_role = item.assigned_role
        db.commit()
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=current_user,
            action="user_assigned",
            entity_type="User",
            entity_id=data.user_id,
            outcome=exc.code,
            details=exc.details,
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="user_assigned",
        entity_type="User",
        entity_id=data.user_id,
        details={
            "role": data.role,
            "assignments": [item.model_dump(mode="json") for item in data.assignments],
        },
    )
    db.expire_all()
    return _user_query(db).filter(User.id == data.user_id).one()


def list_roles_use_case(*, db: Session) -> list[Role]:
    return db.query(Role).options(selectinload(Role.permissions)).order_by(Role.name.asc()).all()


def create_role_use_case(
    *,
    db: Session,
    data: RoleCreate,
    current_user: User,
    audit_sink: AuditSink,
) -> Role:
    try:
        if db.query(Role.id).filter(func.lower(Role.name) == data.name.lower()).first() is not None:
            raise conflict("DUPLICATE_KEY", f"Role '{data.name}' already exists", details={"field": "name"})
        grants = _grants_from_request(data.permissions, data.capabilities)
        role = Role(name=data.name, description=data.description)
        _set_role_grants(role, grants)
        db.add(role)
        db.commit()
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=current_user,
            action="role_created",
            entity_type="Role",
            entity_id=None,
            outcome=exc.code,
            details={"name": data.name},
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="role_created",
        entity_type="Role",
        entity_id=role.id,
        details={"name": role.name, "grants": sorted(f"{r}:{a}" for r, a in grants)},
    )
    return db.query(Role).options(selectinload(Role.permissions)).filter(Role.id == role.id).one()


def update_user_role_permissions_use_case(
    *,
    db: Session,
    user_id: UUID,
    data: UpdatePermissionsRequest,
    current_user: User,
    audit_sink: AuditSink,
) -> Role:
    """Replace the grants of the role held by user_id.

    The change applies to every user holding that role. The Admin role is
    not editable, so administration can never lock itself out.
    """
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise not_found("User")
        role = db.query(Role).options(selectinload(Role.permissions)).filter(Role.id == user.role_id).one()
        if role.name == ADMIN_ROLE_NAME:
            raise conflict("ADMIN_ROLE_IMMUTABLE", "Admin role permissions cannot be changed")
        grants = _grants_from_request(data.permissions, data.capabilities)
        # Flush the removals first: the unit of work inserts before it deletes.
        role.permissions.clear()
        db.flush()
        _set_role_grants(role, grants)
        db.commit()
    except DomainError as exc:
        db.rollback()
        record_write(
            audit_sink,
            actor=current_user,
            action="role_permissions_updated",
            entity_type="User",
            entity_id=user_id,
            outcome=exc.code,
            details=exc.details,
        )
        raise

    record_write(
        audit_sink,
        actor=current_user,
        action="role_permissions_updated",
        entity_type="Role",
        entity_id=role.id,
        details={"user_id": str(user_id), "grants": sorted(f"{r}:{a}" for r, a in grants)},
    )
    return db.query(Role).options(selectinload(Role.permissions)).filter(Role.id == role.id).one()
