"""Audit records and the sink that carries them off the request path."""
from __future__ import annotations

import logging
import queue
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from .models import AuditLog

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"

# First path segment after the API prefix -> audited entity type.
_PATH_ENTITY_TYPES = {
    "batches": "Batch",
    "customers": "Customer",
    "projects": "Project",
    "samples": "Sample",
    "test-results": "TestResult",
    "deviations": "Deviation",
    "capas": "CAPA",
    "equipment": "Equipment",
    "process-steps": "ProcessStep",
    "admin": "User",
    "user": "User",
    "users": "User",
    "roles": "Role",
    "register": "User",
    "assign-users": "User",
    "dashboard": "Dashboard",
    "logs": "AuditLog",
}
_API_PREFIX = re.compile(r"^/api/v\d+")


@dataclass
class AuditRecord:
    """One audit entry: a request outcome or a write attempt."""

    message: str
    level: str = "info"
    action: str | None = None
    outcome: str | None = None
    method: str | None = None
    url: str | None = None
    status: int | None = None
    user_id: UUID | str | None = None
    user_email: str | None = None
    user_role: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: float | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict for the task queue."""
        return jsonable_encoder(asdict(self))


def write_audit_record(db: Session, payload: dict[str, Any]) -> AuditLog:
    """Persist one audit payload (caller commits)."""
    data = dict(payload)
    user_id = data.pop("user_id", None)
    row = AuditLog(user_id=UUID(str(user_id)) if user_id else None, **data)
    db.add(row)
    return row


class AuditSink:
    """Destination for audit records. emit() must never raise."""

    def emit(self, record: AuditRecord) -> None:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def close(self) -> None:
        pass


class CeleryAuditSink(AuditSink):
    """Bounded in-process queue drained by one thread that publishes Celery tasks.

    Request threads only enqueue; when the queue is full the record is dropped
    and logged.
    """

    def __init__(self, task, *, maxsize: int = 1000, close_timeout: float = 5.0):
        self._task = task
        self._queue: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=maxsize)
        self._close_timeout = close_timeout
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="audit-dispatch", daemon=True)
        self._thread.start()

    def emit(self, record: AuditRecord) -> None:
        try:
            self._queue.put_nowait(record.to_payload())
        except queue.Full:
            logger.warning("Audit queue full, dropping record action=%s url=%s", record.action, record.url)

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            if payload is None:
                break
            try:
                self._task.apply_async(args=[payload], retry=False)
            except Exception:
                # Audit delivery never propagates to callers.
                logger.exception("Audit dispatch failed, record dropped action=%s", payload.get("action"))

    def close(self) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put(None, timeout=self._close_timeout)
        except queue.Full:
            logger.warning("Audit queue still full at shutdown, pending records dropped")
            return
        self._thread.join(timeout=self._close_timeout)
        self._thread = None


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink


def actor_fields(actor) -> dict[str, Any]:
    role = getattr(actor, "role", None)
    return {
        "user_id": getattr(actor, "id", None),
        "user_email": getattr(actor, "email", None),
        "user_role": getattr(role, "name", None),
    }


def record_write(
    sink: AuditSink,
    *,
    actor,
    action: str,
    entity_type: str,
    entity_id: Any,
    outcome: str = OUTCOME_SUCCESS,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit the audit event for one write attempt (successful or not)."""
    failed = outcome != OUTCOME_SUCCESS
    sink.emit(
        AuditRecord(
            message=f"{action} {entity_type} {entity_id}: {outcome}",
            level="warn" if failed else "info",
            action=action,
            outcome=outcome,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details or {},
            **actor_fields(actor),
        )
    )


def effected_entity_from_path(path: str) -> tuple[str | None, str | None]:
    """Derive (entity_type, entity_id) from a request path."""
    segments = [segment for segment in _API_PREFIX.sub("", path).split("/") if segment]
    if not segments:
        return None, None
    if segments[0] == "admin" and len(segments) > 1:
        segments = segments[1:]
    entity_type = _PATH_ENTITY_TYPES.get(segments[0])
    entity_id = segments[1] if len(segments) > 1 and entity_type else None
    return entity_type, entity_id


def level_for_status(status: int) -> str:
    if status >= 500:
        return "error"
    if status >= 400:
        return "warn"
    return "info"


def request_audit_record(
    *,
    method: str,
    path: str,
    status: int,
    duration_ms: float,
    principal: dict[str, Any] | None,
) -> AuditRecord:
    entity_type, entity_id = effected_entity_from_path(path)
    principal = principal or {}
    return AuditRecord(
        message=f"{method} {path} -> {status}",
        level=level_for_status(status),
        action="http_request",
        method=method,
        url=path,
        status=status,
        user_id=principal.get("id"),
        user_email=principal.get("email"),
        user_role=principal.get("role"),
        entity_type=entity_type,
        entity_id=entity_id,
        duration_ms=round(duration_ms, 2),
    )
