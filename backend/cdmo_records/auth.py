"""Authentication and capability-based authorization."""
from datetime import timedelta
from typing import Optional
import logging
import time
from uuid import UUID
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session, selectinload
from .config import settings
from .database import get_db
from .domain_errors import DomainError, forbidden
from .models import Role, User

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = logging.getLogger(__name__)

# Bearer token scheme; the credential cookie is the fallback.
security = HTTPBearer(auto_error=False)


RESOURCES = ("batches", "customers", "quality", "equipment", "dashboard", "logs", "users", "roles")
ACTIONS = ("view", "edit", "add_delete")
FLAG_ACTIONS = {"canView": "view", "canEdit": "edit", "canAddDel": "add_delete"}

VIEW_ALL_BATCHES = ("batches", "view_all")
FORCE_RELEASE = ("batches", "force_release")

ADMIN_ROLE_NAME = "Admin"


def _crud(resource: str, *actions: str) -> set[tuple[str, str]]:
    return {(resource, action) for action in (actions or ACTIONS)}


# Default grants seeded for the built-in roles.
DEFAULT_ROLE_GRANTS: dict[str, set[tuple[str, str]]] = {
    "Admin": set().union(*(_crud(resource) for resource in RESOURCES)) | {VIEW_ALL_BATCHES, FORCE_RELEASE},
    "Supervisor": (
        _crud("batches") | _crud("customers") | _crud("quality") | _crud("equipment")
        | _crud("dashboard", "view") | _crud("logs", "view") | {VIEW_ALL_BATCHES}
    ),
    "QA": (
        _crud("batches", "view", "edit") | _crud("customers", "view") | _crud("quality")
        | _crud("equipment", "view") | _crud("dashboard", "view") | _crud("logs", "view")
    ),
    "Analyst": (
        _crud("batches", "view") | _crud("customers", "view") | _crud("quality")
        | _crud("equipment", "view") | _crud("dashboard", "view")
    ),
    "Operator": (
        _crud("batches") | _crud("customers", "view") | _crud("quality", "view", "add_delete")
        | _crud("equipment") | _crud("dashboard", "view")
    ),
}

DEFAULT_ROLE_DESCRIPTIONS = {
    "Admin": "Full access including user, role and force-release administration",
    "Supervisor": "Production supervision across all projects",
    "QA": "Quality assurance review and deviation handling",
    "Analyst": "QC laboratory analyst",
    "Operator": "Shop-floor operator",
}


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against hash."""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Invalid/corrupted hash should not crash login flow.
        logger.exception("Password verification failed due to invalid hash format")
        return False


def get_password_hash(password: str) -> str:
    """Hash password."""
    return pwd_context.hash(password)


# Alias for convenience
hash_password = get_password_hash


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    to_encode = data.copy()
    now = int(time.time())
    if expires_delta:
        exp = now + int(expires_delta.total_seconds())
    else:
        exp = now + int(settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES) * 60
    to_encode.update({"exp": exp, "iat": now, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _unauthenticated(message: str = "Authentication required") -> DomainError:
    return DomainError(code="UNAUTHENTICATED", http_status=401, message=message)


def _invalid_credential(message: str = "Could not validate credentials") -> DomainError:
    return DomainError(code="INVALID_CREDENTIAL", http_status=401, message=message)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT access token.

    Malformed tokens raise UNAUTHENTICATED; signature, expiry and claim
    failures raise INVALID_CREDENTIAL.
    """
    try:
        jwt.get_unverified_header(token)
    except JWTError:
        raise _unauthenticated("Malformed credential")

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise _invalid_credential()

    now = int(time.time())
    try:
        exp = int(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise _invalid_credential()
    if now > exp + int(settings.JWT_LEEWAY_SECONDS):
        raise _invalid_credential("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise _invalid_credential()
        # Reject tokens issued far in the future (clock skew / forged tokens).
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise _invalid_credential()

    if payload.get("type") != "access":
        raise _invalid_credential("Invalid token type")
    return payload


def _parse_token_subject(payload: dict) -> UUID:
    """Parse and validate JWT subject as UUID."""
    sub = payload.get("sub")
    if not sub:
        raise _invalid_credential()
    try:
        return UUID(str(sub))
    except ValueError:
        raise _invalid_credential()


def _extract_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    cookie_token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if cookie_token:
        return cookie_token
    raise _unauthenticated()


def authenticate(db: Session, token: str) -> User:
    """Resolve a signed credential to an active user with role grants loaded."""
    payload = decode_token(token)
    user_id = _parse_token_subject(payload)
    user = (
        db.query(User)
        .options(selectinload(User.role).selectinload(Role.permissions))
        .filter(User.id == user_id, User.is_active.is_(True))
        .first()
    )
    if user is None:
        raise _invalid_credential("User not found or inactive")
    return user


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current authenticated user (bearer header or credential cookie)."""
    token = _extract_token(request, credentials)
    user = authenticate(db, token)
    # Read by the request audit middleware.
    request.state.principal = {
        "id": user.id,
        "email": user.email,
        "role": user.role.name if user.role else None,
    }
    return user


def user_capabilities(user: User) -> set[tuple[str, str]]:
    role = getattr(user, "role", None)
    if role is None:
        return set()
    return {(grant.resource, grant.action) for grant in role.permissions}


def check_permission(user: User, resource: str, action: str) -> bool:
    """Check if user's role grants (resource, action)."""
    return (resource, action) in user_capabilities(user)


def require_permission(user: User, resource: str, action: str) -> None:
    """Enforce a capability server-side."""
    if not check_permission(user, resource, action):
        raise forbidden(
            f"Permission denied: {resource}:{action} required",
            details={"resource": resource, "action": action},
        )


class PermissionChecker:
    """Dependency that authenticates and checks one capability."""

    def __init__(self, resource: str, action: str):
        self.resource = resource
        self.action = action

    def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        require_permission(current_user, self.resource, self.action)
        return current_user


def grants_from_flags(permissions: list[dict]) -> set[tuple[str, str]]:
    """Convert {resource, canView, canEdit, canAddDel} flag rows to grants."""
    grants: set[tuple[str, str]] = set()
    for row in permissions:
        resource = row["resource"]
        for flag, action in FLAG_ACTIONS.items():
            if row.get(flag):
                grants.add((resource, action))
    return grants


def flags_from_grants(grants: set[tuple[str, str]]) -> list[dict]:
    """Inverse of grants_from_flags, for clients that still render the flag matrix."""
    resources = sorted({resource for resource, _ in grants})
    return [
        {
            "resource": resource,
            **{flag: (resource, action) in grants for flag, action in FLAG_ACTIONS.items()},
        }
        for resource in resources
    ]
