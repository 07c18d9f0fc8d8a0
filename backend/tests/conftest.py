from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from cdmo_records.audit import AuditSink
from cdmo_records.auth import create_access_token, get_password_hash
from cdmo_records.database import Database
from cdmo_records.main import create_app
from cdmo_records.models import (
    Batch,
    BatchComponent,
    Customer,
    Deviation,
    ProcessStep,
    Project,
    ProjectAssignment,
    Role,
    Sample,
    TestResult,
    User,
)
from cdmo_records.routers import auth as auth_router
from cdmo_records.use_cases.admin_accounts import seed_default_roles


class RecordingAuditSink(AuditSink):
    def __init__(self) -> None:
        self.records = []

    def emit(self, record) -> None:
        self.records.append(record)

    def actions(self, action: str) -> list:
        return [record for record in self.records if record.action == action]


class FakeRedis:
    """Just enough of the redis client for login throttling."""

    def __init__(self) -> None:
        self.values: dict[str, int | str] = {}
        self.ttls: dict[str, int] = {}

    def incr(self, key: str) -> int:
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    def expire(self, key: str, seconds: int) -> None:
        self.ttls[key] = seconds

    def ttl(self, key: str) -> int:
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    def set(self, key: str, value, ex: int | None = None) -> None:
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex

    def delete(self, key: str) -> None:
        self.values.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(auth_router, "_get_redis", lambda: fake)
    return fake


@pytest.fixture
def database(tmp_path) -> Database:
    database = Database(f"sqlite:///{tmp_path / 'records.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    seed_default_roles(session)
    yield session
    session.close()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def client(database, db, audit_sink) -> TestClient:
    app = create_app(database=database, audit_sink=audit_sink)
    with TestClient(app) as test_client:
        yield test_client


def make_user(db, role_name: str, username: str | None = None, password: str = "password123") -> User:
    role = db.query(Role).filter(Role.name == role_name).one()
    username = username or role_name.lower()
    user = User(
        username=username,
        email=f"{username}@cdmo.test",
        password_hash=get_password_hash(password),
        role_id=role.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(user.id), "role": user.role.name})
    return {"Authorization": f"Bearer {token}"}


def make_project(db, *, customer_name: str = "Acme Pharma", project_code: str = "ACME-001") -> Project:
    customer = Customer(name=customer_name, country="USA")
    db.add(customer)
    db.flush()
    project = Project(project_code=project_code, project_name=f"{customer_name} project", customer_id=customer.id)
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def _releaser(db) -> User:
    user = db.query(User).filter(User.username == "qa.releaser").first()
    return user or make_user(db, "QA", username="qa.releaser")


def make_batch(db, project: Project, api_batch_id: str, status: str = "Completed", **fields) -> Batch:
    if status == "Released":
        fields.setdefault("released_at", datetime.now(timezone.utc))
        fields.setdefault("released_by", _releaser(db).id)
    batch = Batch(
        api_batch_id=api_batch_id,
        customer_id=project.customer_id,
        project_id=project.id,
        product_name=fields.pop("product_name", "Acmetinib"),
        status=status,
        **fields,
    )
    db.add(batch)
    db.commit()
    db.refresh(batch)
    return batch


def add_steps(db, batch: Batch, total: int, completed: int) -> list[ProcessStep]:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    steps = []
    for sequence in range(1, total + 1):
        step = ProcessStep(
            batch_id=batch.id,
            step_name=f"Step {sequence}",
            step_sequence=sequence,
            start_timestamp=start + timedelta(hours=sequence),
            end_timestamp=start + timedelta(hours=sequence, minutes=30) if sequence <= completed else None,
        )
        db.add(step)
        steps.append(step)
    db.commit()
    return steps


def add_deviation(db, batch: Batch, number: str, *, severity: str = "Major", status: str = "Open", **fields) -> Deviation:
    deviation = Deviation(
        deviation_no=number,
        batch_id=batch.id,
        title=f"Deviation {number}",
        severity=severity,
        status=status,
        **fields,
    )
    db.add(deviation)
    db.commit()
    db.refresh(deviation)
    return deviation


def add_sample_with_results(db, batch: Batch, sample_id: str, *results: str, component=None) -> Sample:
    sample = Sample(
        sample_id=sample_id,
        batch_id=batch.id,
        sample_type="In-Process",
        batch_component_id=component.id if component is not None else None,
    )
    db.add(sample)
    db.flush()
    for index, value in enumerate(results, start=1):
        db.add(TestResult(test_id=f"{sample_id}-T{index}", sample_record_id=sample.id, parameter="Assay", result=value))
    db.commit()
    db.refresh(sample)
    return sample


def add_component(db, batch: Batch, material_code: str, *, step=None, **fields) -> BatchComponent:
    component = BatchComponent(
        batch_id=batch.id,
        process_step_id=step.id if step is not None else None,
        material_code=material_code,
        component_name=fields.pop("component_name", material_code),
        **fields,
    )
    db.add(component)
    db.commit()
    db.refresh(component)
    return component


def assign(db, user: User, project: Project, assigned_role: str = "Project Manager") -> None:
    db.add(ProjectAssignment(user_id=user.id, project_id=project.id, assigned_role=assigned_role))
    db.commit()


@pytest.fixture
def records():
    """Builders for test data, bound to nothing so tests pass their own session."""
    return SimpleNamespace(
        make_user=make_user,
        make_project=make_project,
        make_batch=make_batch,
        add_steps=add_steps,
        add_deviation=add_deviation,
        add_sample_with_results=add_sample_with_results,
        add_component=add_component,
        assign=assign,
        auth_headers=auth_headers,
    )
