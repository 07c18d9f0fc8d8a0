"""Session endpoints: login, logout and the current principal."""
import ipaddress
import logging

import redis
from redis.exceptions import RedisError
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from ..audit import AuditSink, get_audit_sink, record_write
from ..auth import create_access_token, get_current_user
from ..config import settings
from ..database import get_db
from ..domain_errors import DomainError, validation
from ..models import User
from ..schemas import AuthUserResponse, LoginRequest, LoginResponse
from ..use_cases.admin_accounts import (
    auth_user_view,
    authenticate_credentials_use_case,
    find_user_by_identifier,
)

router = APIRouter(prefix="/user", tags=["auth"])
logger = logging.getLogger(__name__)


_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _get_client_ip(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            try:
                ipaddress.ip_address(real_ip)
                return real_ip
            except ValueError:
                pass

        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For may contain a list: client, proxy1, proxy2
            candidate = forwarded.split(",")[0].strip()
            try:
                ipaddress.ip_address(candidate)
                return candidate
            except ValueError:
                pass

    if request.client:
        return request.client.host
    return "unknown"


def _set_no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"


def _incr_with_ttl(key: str, ttl_seconds: int) -> tuple[int, int]:
    """
    Increment a Redis counter and ensure it has an expiry.
    Returns (value, ttl_remaining_seconds).
    """
    r = _get_redis()
    value = r.incr(key)
    if value == 1:
        r.expire(key, ttl_seconds)
    ttl = r.ttl(key)
    if ttl is None or ttl < 0:
        ttl = ttl_seconds
    return int(value), int(ttl)


def _enforce_login_rate_limits(*, request: Request, identifier: str | None) -> None:
    ip = _get_client_ip(request)
    try:
        # Hard per-IP limit (password spraying protection).
        attempts, ttl = _incr_with_ttl(f"auth:rl:login:ip:{ip}", 60)
        if attempts > settings.AUTH_LOGIN_IP_LIMIT_PER_MINUTE:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many login attempts. Try again later.",
                headers={"Retry-After": str(ttl)},
            )

        if identifier:
            lock_ttl = _get_redis().ttl(f"auth:lock:login:user:{identifier.lower()}")
            if lock_ttl and lock_ttl > 0:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Account temporarily locked due to failed logins. Try again later.",
                    headers={"Retry-After": str(int(lock_ttl))},
                )
    except RedisError:
        # Fail open if Redis is down to avoid total auth outage.
        logger.exception("Redis error during login rate limiting (fail-open)")


def _register_login_failure(*, user: User | None, identifier: str | None) -> None:
    if not identifier or not user:
        return
    try:
        key = identifier.lower()
        fails, _ = _incr_with_ttl(f"auth:fail:login:user:{key}", settings.AUTH_LOGIN_USER_LOCK_SECONDS)
        if fails >= settings.AUTH_LOGIN_USER_FAIL_THRESHOLD:
            _get_redis().set(f"auth:lock:login:user:{key}", "1", ex=settings.AUTH_LOGIN_USER_LOCK_SECONDS)
    except RedisError:
        logger.exception("Redis error during login failure tracking (fail-open)")


def _clear_login_failures(*, identifier: str) -> None:
    try:
        r = _get_redis()
        key = identifier.lower()
        r.delete(f"auth:fail:login:user:{key}")
        r.delete(f"auth:lock:login:user:{key}")
    except RedisError:
        logger.exception("Redis error during login failure cleanup (ignored)")


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.AUTH_COOKIE_SECURE,
        samesite=settings.AUTH_COOKIE_SAMESITE,
        max_age=int(settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES) * 60,
        path="/",
    )


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """Login with username or email and password."""
    _set_no_store(response)
    identifier = (payload.username or payload.email or "").strip()
    if not identifier:
        raise validation("LOGIN_IDENTIFIER_REQUIRED", "Username or email is required")

    _enforce_login_rate_limits(request=request, identifier=identifier)

    user = authenticate_credentials_use_case(db=db, identifier=identifier, password=payload.password)
    if user is None:
        known_user = find_user_by_identifier(db, identifier)
        _register_login_failure(user=known_user, identifier=identifier)
        # Known accounts only, so the log does not become a user-enumeration oracle.
        if known_user is not None:
            record_write(
                audit_sink,
                actor=known_user,
                action="user_login",
                entity_type="User",
                entity_id=known_user.id,
                outcome="INVALID_CREDENTIAL",
                details={"ip": _get_client_ip(request)},
            )
        raise DomainError(
            code="INVALID_CREDENTIAL",
            http_status=401,
            message="Invalid username or password",
        )

    _clear_login_failures(identifier=identifier)
    access_token = create_access_token({"sub": str(user.id), "role": user.role.name})
    _set_auth_cookie(response, access_token)
    record_write(
        audit_sink,
        actor=user,
        action="user_login",
        entity_type="User",
        entity_id=user.id,
        details={"ip": _get_client_ip(request)},
    )
    request.state.principal = {"id": user.id, "email": user.email, "role": user.role.name}

    return LoginResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=AuthUserResponse.model_validate(auth_user_view(user)),
    )


@router.post("/logout")
def logout(response: Response):
    """Clear the credential cookie."""
    _set_no_store(response)
    response.delete_cookie(
        key=settings.AUTH_COOKIE_NAME,
        path="/",
        secure=settings.AUTH_COOKIE_SECURE,
        samesite=settings.AUTH_COOKIE_SAMESITE,
    )
    return {"message": "Logged out"}


@router.get("/me", response_model=AuthUserResponse)
def me(current_user: User = Depends(get_current_user)):
    """Get the authenticated user with grants and project assignments."""
    return AuthUserResponse.model_validate(auth_user_view(current_user))
