from __future__ import annotations

import pytest

from cdmo_records.audit import AuditRecord, write_audit_record
from cdmo_records.domain_errors import DomainError
from cdmo_records.schemas import RegisterAdminRequest
from cdmo_records.use_cases.admin_accounts import create_first_admin_use_case, seed_default_roles

REGISTER = "/api/v1/admin/register"


def _register_admin(client) -> dict:
    response = client.post(
        REGISTER,
        json={"username": "root", "email": "root@pharma-cdmo.com", "password": "rootpassword"},
    )
    assert response.status_code == 201
    return response.json()


def _login(client, username: str, password: str) -> dict[str, str]:
    response = client.post("/api/v1/user/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_register_first_admin_once(client, audit_sink) -> None:
    admin = _register_admin(client)
    assert admin["role"]["name"] == "Admin"

    again = client.post(
        REGISTER,
        json={"username": "root2", "email": "root2@pharma-cdmo.com", "password": "rootpassword"},
    )

    assert again.status_code == 409
    assert again.json()["code"] == "ADMIN_ALREADY_EXISTS"
    outcomes = [record.outcome for record in audit_sink.actions("admin_registered")]
    assert outcomes == ["success", "ADMIN_ALREADY_EXISTS"]


def test_register_without_seeded_roles_fails(database, audit_sink) -> None:
    session = database.session()
    try:
        with pytest.raises(DomainError) as exc_info:
            create_first_admin_use_case(
                db=session,
                data=RegisterAdminRequest(username="root", email="root@pharma-cdmo.com", password="rootpassword"),
                audit_sink=audit_sink,
            )
    finally:
        session.close()

    assert exc_info.value.http_status == 400
    assert exc_info.value.code == "ADMIN_ROLE_MISSING"


def test_seed_default_roles_is_idempotent(db) -> None:
    assert seed_default_roles(db) == []


def test_register_rejects_short_password(client) -> None:
    response = client.post(REGISTER, json={"username": "root", "email": "root@pharma-cdmo.com", "password": "short"})

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_admin_manages_users_and_assignments(client, db, records) -> None:
    _register_admin(client)
    headers = _login(client, "root", "rootpassword")
    project = records.make_project(db)
    records.make_batch(db, project, "ACME-1", status="In-Process")

    created = client.post(
        "/api/v1/admin/users",
        json={"username": "op.jane", "email": "jane@pharma-cdmo.com", "password": "janepassword", "role": "Operator"},
        headers=headers,
    )
    assert created.status_code == 201
    user_id = created.json()["id"]

    duplicate = client.post(
        "/api/v1/admin/users",
        json={"username": "op.other", "email": "JANE@pharma-cdmo.com", "password": "janepassword", "role": "Operator"},
        headers=headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["details"] == {"field": "email"}

    unknown_role = client.post(
        "/api/v1/admin/users",
        json={"username": "op.x", "email": "x@pharma-cdmo.com", "password": "xpassword1", "role": "Wizard"},
        headers=headers,
    )
    assert unknown_role.status_code == 404
    assert unknown_role.json()["code"] == "ROLE_NOT_FOUND"

    jane_headers = _login(client, "op.jane", "janepassword")
    assert client.get("/api/v1/customers", headers=jane_headers).json() == []

    assigned = client.post(
        "/api/v1/admin/assign-users",
        json={"user_id": user_id, "assignments": [{"project_id": str(project.id), "assigned_role": "Project Manager"}]},
        headers=headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["project_assignments"] == [
        {"project_id": str(project.id), "assigned_role": "Project Manager"}
    ]

    customers = client.get("/api/v1/customers", headers=jane_headers).json()
    assert [customer["name"] for customer in customers] == ["Acme Pharma"]
    assert customers[0]["batchCount"] == 1

    users = client.get("/api/v1/admin/users", headers=headers).json()
    assert [user["username"] for user in users] == ["op.jane", "root"]


def test_assign_to_unknown_project_is_not_found(client, db, records) -> None:
    admin = records.make_user(db, "Admin")
    operator = records.make_user(db, "Operator")

    response = client.post(
        "/api/v1/admin/assign-users",
        json={
            "user_id": str(operator.id),
            "assignments": [{"project_id": "00000000-0000-0000-0000-000000000001", "assigned_role": "Lab Authority"}],
        },
        headers=records.auth_headers(admin),
    )

    assert response.status_code == 404
    assert response.json()["code"] == "PROJECT_NOT_FOUND"


def test_role_grants_can_be_replaced_except_admin(client, db, records) -> None:
    admin = records.make_user(db, "Admin")
    operator = records.make_user(db, "Operator")
    headers = records.auth_headers(admin)

    updated = client.post(
        f"/api/v1/admin/users/{operator.id}/permissions",
        json={
            "permissions": [{"resource": "batches", "canView": True}, {"resource": "logs", "canView": True}],
            "capabilities": ["batches:view_all"],
        },
        headers=headers,
    )
    assert updated.status_code == 200
    grants = {(item["resource"], item["action"]) for item in updated.json()["permissions"]}
    assert grants == {("batches", "view"), ("batches", "view_all"), ("logs", "view")}

    assert client.get("/api/v1/logs", headers=records.auth_headers(operator)).status_code == 200
    create = client.post(
        "/api/v1/customers",
        json={"name": "Blocked Corp"},
        headers=records.auth_headers(operator),
    )
    assert create.status_code == 403

    immutable = client.post(
        f"/api/v1/admin/users/{admin.id}/permissions",
        json={"permissions": []},
        headers=headers,
    )
    assert immutable.status_code == 409
    assert immutable.json()["code"] == "ADMIN_ROLE_IMMUTABLE"


def test_unknown_capability_is_rejected(client, db, records) -> None:
    admin = records.make_user(db, "Admin")
    operator = records.make_user(db, "Operator")

    response = client.post(
        f"/api/v1/admin/users/{operator.id}/permissions",
        json={"permissions": [], "capabilities": ["batches:teleport"]},
        headers=records.auth_headers(admin),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_CAPABILITY"


def test_create_role_and_list_roles(client, db, records) -> None:
    admin = records.make_user(db, "Admin")
    headers = records.auth_headers(admin)

    created = client.post(
        "/api/v1/admin/roles",
        json={"name": "Auditor", "permissions": [{"resource": "logs", "canView": True}]},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["permissions"] == [{"resource": "logs", "action": "view"}]

    duplicate = client.post("/api/v1/admin/roles", json={"name": "auditor"}, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "DUPLICATE_KEY"

    names = [role["name"] for role in client.get("/api/v1/admin/roles", headers=headers).json()]
    assert names == ["Admin", "Analyst", "Auditor", "Operator", "QA", "Supervisor"]


def test_logs_are_listed_newest_first(client, db, records) -> None:
    admin = records.make_user(db, "Admin")
    for index in range(3):
        write_audit_record(
            db,
            AuditRecord(message=f"event {index}", action="replay", entity_type="Batch").to_payload(),
        )
        db.commit()

    response = client.get("/api/v1/logs", params={"limit": 2}, headers=records.auth_headers(admin))

    assert response.status_code == 200
    rows = response.json()
    assert len(rows) == 2
    assert all(row["action"] == "replay" for row in rows)
