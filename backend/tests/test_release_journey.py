from __future__ import annotations

API = "/api/v1"


def _create(client, path: str, payload: dict, headers: dict) -> dict:
    response = client.post(f"{API}{path}", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_batch_record_release_journey(client, db, records) -> None:
    supervisor = records.make_user(db, "Supervisor")
    qa = records.make_user(db, "QA")
    sup_headers = records.auth_headers(supervisor)
    qa_headers = records.auth_headers(qa)

    customer = _create(client, "/customers", {"name": "Acme Pharma", "country": "USA"}, sup_headers)
    project = _create(
        client,
        "/projects",
        {"project_code": "ACME-001", "project_name": "Acmetinib", "customer_id": customer["id"]},
        sup_headers,
    )
    intermediate = _create(
        client, "/batches", {"api_batch_id": "ACME-INT-1", "project_id": project["id"], "status": "In-Process"},
        sup_headers,
    )
    batch = _create(
        client, "/batches", {"api_batch_id": "ACME-API-1", "project_id": project["id"], "status": "In-Process"},
        sup_headers,
    )
    batch_id = batch["id"]
    assert batch["customer_id"] == customer["id"]

    step = _create(
        client,
        f"/batches/{batch_id}/process-steps",
        {"step_name": "Charging", "step_sequence": 1, "start_timestamp": "2026-03-01T08:00:00Z"},
        sup_headers,
    )
    component = _create(
        client,
        f"/batches/{batch_id}/components",
        {
            "component_type": "Intermediate",
            "material_code": "INT-7781",
            "component_batch_id": "ACME-INT-1",
            "process_step_id": step["id"],
            "quantity_used": 60,
            "uom": "kg",
        },
        sup_headers,
    )
    assert component["source_batch_id"] == intermediate["id"]

    _create(client, "/equipment", {"id": "EQ-REACTOR-01", "name": "Reactor", "status": "In Use"}, sup_headers)
    event = client.post(
        f"{API}/equipment/EQ-REACTOR-01/events",
        json={"event_type": "Usage", "related_process_step_id": step["id"]},
        headers=sup_headers,
    )
    assert event.status_code == 201
    assert event.json()["related_batch_id"] == batch_id

    sample = _create(
        client,
        f"/batches/{batch_id}/samples",
        {"sample_id": "S-API-1", "sample_type": "In-Process", "batch_component_id": component["id"]},
        qa_headers,
    )
    test_result = _create(
        client, f"/samples/{sample['id']}/test-results", {"test_id": "T-1", "parameter": "Assay"}, qa_headers,
    )
    deviation = _create(
        client,
        f"/batches/{batch_id}/deviations",
        {
            "deviation_no": "DEV-1",
            "title": "Temperature excursion",
            "severity": "Major",
            "linked_entity": {"entity_type": "ProcessStep", "process_step_id": step["id"]},
        },
        qa_headers,
    )

    blocked = client.put(f"{API}/batches/{batch_id}/release", headers=qa_headers)
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "BATCH_RELEASE_BLOCKED_OPEN_DEVIATIONS"
    assert blocked.headers["content-type"].startswith("application/problem+json")

    closed = client.put(
        f"{API}/deviations/{deviation['id']}/close",
        json={"action_taken": "Cooling loop repaired"},
        headers=qa_headers,
    )
    assert closed.status_code == 200
    assert closed.json()["status"] == "Closed"

    pending = client.put(f"{API}/batches/{batch_id}/release", headers=qa_headers)
    assert pending.status_code == 409
    assert pending.json()["code"] == "BATCH_RELEASE_BLOCKED_PENDING_TESTS"

    recorded = client.put(
        f"{API}/test-results/{test_result['id']}", json={"result": "Pass", "value": 99.2}, headers=qa_headers,
    )
    assert recorded.status_code == 200
    assert recorded.json()["tested_at"] is not None

    completed = client.put(f"{API}/process-steps/{step['id']}/complete", headers=sup_headers)
    assert completed.status_code == 200
    assert completed.json()["end_timestamp"] is not None

    released = client.put(f"{API}/batches/{batch_id}/release", json={"notes": "QA approved"}, headers=qa_headers)
    assert released.status_code == 200
    payload = released.json()
    assert payload["status"] == "Released"
    assert payload["released_by"] == str(qa.id)
    assert payload["release_notes"] == "QA approved"
    assert payload["customer_name"] == "Acme Pharma"

    again = client.put(f"{API}/batches/{batch_id}/release", headers=qa_headers)
    assert again.status_code == 409
    assert again.json()["code"] == "BATCH_ALREADY_RELEASED"

    status = client.get(f"{API}/batches/{batch_id}/status", headers=qa_headers).json()
    assert status["status"] == "Released"
    assert status["released_at"] is not None

    board = client.get(f"{API}/customers/{customer['id']}/batches", headers=sup_headers).json()
    assert board["summary"]["released"] == 1
    assert board["summary"]["inProgress"] == 1
    rows = {row["api_batch_id"]: row for row in board["batches"]}
    assert rows["ACME-API-1"]["progress"] == 100
    assert rows["ACME-API-1"]["deviations"] == {"total": 1, "critical": 0, "non_critical": 1}

    summary = client.get(f"{API}/dashboard/summary", headers=qa_headers).json()
    assert summary["releasedToday"] == 1
    assert summary["openDeviations"] == 0

    genealogy = client.get(f"{API}/batches/{batch_id}/genealogy-table", headers=qa_headers).json()
    assert [row["materialId"] for row in genealogy["genealogy"]] == ["INT-7781"]
    assert genealogy["genealogy"][0]["samples"][0]["status"] == "Passed"

    equipment = client.get(f"{API}/batches/{batch_id}/equipment", headers=qa_headers).json()
    assert equipment["summaryMetrics"]["total_equipment"] == 1
    assert equipment["equipmentTable"][0]["usage_in_batch"] == "Step 1: Charging"

    lineage = client.get(f"{API}/batches/{intermediate['id']}/lineage", headers=qa_headers).json()
    assert [child["api_batch_id"] for child in lineage["childBatches"]] == ["ACME-API-1"]

    quality = client.get(f"{API}/batches/{batch_id}/deviations-capa", headers=qa_headers).json()
    assert quality["stats"]["closed"] == 1


def test_customer_batches_query_validation(client, db, records) -> None:
    supervisor = records.make_user(db, "Supervisor")
    project = records.make_project(db)

    response = client.get(
        f"{API}/customers/{project.customer_id}/batches",
        params={"limit": 500},
        headers=records.auth_headers(supervisor),
    )
    assert response.status_code == 422

    response = client.get(
        f"{API}/customers/{project.customer_id}/batches",
        params={"sortBy": "api_batch_id", "sortOrder": "up"},
        headers=records.auth_headers(supervisor),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SORT_ORDER"


def test_status_route_and_actions(client, db, records) -> None:
    supervisor = records.make_user(db, "Supervisor")
    project = records.make_project(db)
    batch = records.make_batch(db, project, "ACME-1", status="Not Started")
    headers = records.auth_headers(supervisor)

    invalid = client.put(f"{API}/batches/{batch.id}/status", json={"status": "Done"}, headers=headers)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "BATCH_INVALID_STATUS"

    skipped = client.put(f"{API}/batches/{batch.id}/status", json={"status": "Completed"}, headers=headers)
    assert skipped.status_code == 409
    assert skipped.json()["code"] == "BATCH_INVALID_TRANSITION"

    started = client.post(f"{API}/batches/{batch.id}/actions", json={"action": "start"}, headers=headers)
    assert started.status_code == 200
    assert started.json()["status"] == "In-Process"

    missing = client.get(f"{API}/batches/00000000-0000-0000-0000-000000000000/status", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "BATCH_NOT_FOUND"


def test_health_and_root(client) -> None:
    assert client.get(f"{API}/system/health").json()["status"] == "ok"
    assert client.get("/").json()["docs"] == "/docs"
