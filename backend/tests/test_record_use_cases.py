from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from cdmo_records.domain_errors import DomainError
from cdmo_records.models import Equipment
from cdmo_records.schemas import (
    BatchCreate,
    CapaCreate,
    ComponentCreate,
    CustomerCreate,
    DeviationClose,
    DeviationCreate,
    EquipmentCreate,
    EquipmentEventCreate,
    LinkedEntityIn,
    ProcessStepCreate,
    ProjectCreate,
    SampleCreate,
    StepCompleteRequest,
)
from cdmo_records import schemas
from cdmo_records.use_cases.batch_reporting import batch_lineage_use_case
from cdmo_records.use_cases.records import (
    add_batch_component_use_case,
    add_process_step_use_case,
    add_sample_use_case,
    add_test_result_use_case,
    close_deviation_use_case,
    complete_process_step_use_case,
    create_batch_use_case,
    create_capa_use_case,
    create_customer_use_case,
    create_equipment_use_case,
    create_project_use_case,
    raise_deviation_use_case,
    record_equipment_event_use_case,
    record_test_result_use_case,
)

T0 = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


@pytest.fixture
def operator(db, records):
    return records.make_user(db, "Operator")


@pytest.fixture
def project(db, records):
    return records.make_project(db)


@pytest.fixture
def batch(db, records, project):
    return records.make_batch(db, project, "ACME-API-1", status="In-Process")


def test_customer_project_and_batch_creation(db, operator, audit_sink) -> None:
    customer = create_customer_use_case(
        db=db,
        data=CustomerCreate(name="Globex", country="DE"),
        current_user=operator,
        audit_sink=audit_sink,
    )
    project = create_project_use_case(
        db=db,
        data=ProjectCreate(project_code="GLX-1", project_name="Globex API", customer_id=customer.id),
        current_user=operator,
        audit_sink=audit_sink,
    )
    batch = create_batch_use_case(
        db=db,
        data=BatchCreate(api_batch_id="GLX-1-B1", project_id=project.id, datasource="MES"),
        current_user=operator,
        audit_sink=audit_sink,
    )

    assert batch.customer_id == customer.id
    assert batch.status == "Not Started"
    assert [record.action for record in audit_sink.records] == ["customer_created", "project_created", "batch_created"]
    assert all(record.outcome == "success" for record in audit_sink.records)
    assert audit_sink.records[-1].entity_id == str(batch.id)


def test_project_for_unknown_customer_is_not_found(db, operator, audit_sink) -> None:
    with pytest.raises(DomainError) as exc_info:
        create_project_use_case(
            db=db,
            data=ProjectCreate(project_code="X-1", project_name="X", customer_id=uuid4()),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.code == "CUSTOMER_NOT_FOUND"
    [record] = audit_sink.records
    assert record.outcome == "CUSTOMER_NOT_FOUND"
    assert record.level == "warn"


def test_duplicate_batch_id_is_conflict_and_audited(db, project, batch, operator, audit_sink) -> None:
    with pytest.raises(DomainError) as exc_info:
        create_batch_use_case(
            db=db,
            data=BatchCreate(api_batch_id="ACME-API-1", project_id=project.id),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.http_status == 409
    assert exc_info.value.code == "DUPLICATE_KEY"
    assert exc_info.value.details == {"field": "api_batch_id", "value": "ACME-API-1"}
    assert audit_sink.actions("batch_created")[0].outcome == "DUPLICATE_KEY"


def test_process_step_rules(db, batch, operator, audit_sink) -> None:
    step = add_process_step_use_case(
        db=db,
        batch_id=batch.id,
        data=ProcessStepCreate(
            step_name="Charging",
            step_sequence=1,
            start_timestamp=T0,
            equipment=[{"equipment": "EQ-1", "equipment_status": "Clean", "calibration_status": "Valid"}],
        ),
        current_user=operator,
        audit_sink=audit_sink,
    )
    assert step.equipment_snapshot[0]["equipment"] == "EQ-1"

    with pytest.raises(DomainError) as duplicate:
        add_process_step_use_case(
            db=db,
            batch_id=batch.id,
            data=ProcessStepCreate(step_name="Again", step_sequence=1),
            current_user=operator,
            audit_sink=audit_sink,
        )
    assert duplicate.value.code == "DUPLICATE_KEY"

    with pytest.raises(DomainError) as backwards:
        add_process_step_use_case(
            db=db,
            batch_id=batch.id,
            data=ProcessStepCreate(
                step_name="Drying", step_sequence=2, start_timestamp=T0, end_timestamp=T0 - timedelta(hours=1),
            ),
            current_user=operator,
            audit_sink=audit_sink,
        )
    assert backwards.value.code == "PROCESS_STEP_INVALID_TIMESTAMPS"


def test_complete_process_step_once(db, records, batch, operator, audit_sink) -> None:
    [step] = records.add_steps(db, batch, total=1, completed=0)
    end = T0 + timedelta(hours=3)

    completed = complete_process_step_use_case(
        db=db, step_id=step.id, data=StepCompleteRequest(end_timestamp=end), current_user=operator,
        audit_sink=audit_sink,
    )
    assert completed.end_timestamp is not None

    with pytest.raises(DomainError) as exc_info:
        complete_process_step_use_case(
            db=db, step_id=step.id, data=StepCompleteRequest(), current_user=operator, audit_sink=audit_sink,
        )
    assert exc_info.value.code == "PROCESS_STEP_ALREADY_COMPLETED"

    with pytest.raises(DomainError) as missing:
        complete_process_step_use_case(
            db=db, step_id=uuid4(), data=StepCompleteRequest(), current_user=operator, audit_sink=audit_sink,
        )
    assert missing.value.code == "PROCESS_STEP_NOT_FOUND"


def test_component_resolves_source_batch(db, records, project, batch, operator, audit_sink) -> None:
    upstream = records.make_batch(db, project, "ACME-INT-1", status="Released")

    component = add_batch_component_use_case(
        db=db,
        batch_id=batch.id,
        data=ComponentCreate(component_type="Intermediate", material_code="INT-1", component_batch_id="ACME-INT-1"),
        current_user=operator,
        audit_sink=audit_sink,
    )
    external = add_batch_component_use_case(
        db=db,
        batch_id=batch.id,
        data=ComponentCreate(component_type="Raw Material", material_code="RM-1", component_batch_id="SUPPLIER-LOT"),
        current_user=operator,
        audit_sink=audit_sink,
    )

    assert component.source_batch_id == upstream.id
    assert external.source_batch_id is None
    assert external.component_batch_id == "SUPPLIER-LOT"


def test_upstream_batch_created_later_links_earlier_components(db, project, batch, operator, audit_sink) -> None:
    component = add_batch_component_use_case(
        db=db,
        batch_id=batch.id,
        data=ComponentCreate(component_type="Intermediate", material_code="INT-9", component_batch_id="ACME-UP-1"),
        current_user=operator,
        audit_sink=audit_sink,
    )
    assert component.source_batch_id is None

    upstream = create_batch_use_case(
        db=db,
        data=BatchCreate(api_batch_id="ACME-UP-1", project_id=project.id),
        current_user=operator,
        audit_sink=audit_sink,
    )

    db.refresh(component)
    assert component.source_batch_id == upstream.id
    assert audit_sink.actions("batch_created")[-1].details["linked_components"] == 1
    lineage = batch_lineage_use_case(db=db, batch_id=upstream.id)
    assert [child["api_batch_id"] for child in lineage["childBatches"]] == ["ACME-API-1"]


def test_component_rejects_self_reference_and_foreign_step(db, records, project, batch, operator, audit_sink) -> None:
    with pytest.raises(DomainError) as self_ref:
        add_batch_component_use_case(
            db=db,
            batch_id=batch.id,
            data=ComponentCreate(component_batch_id="ACME-API-1"),
            current_user=operator,
            audit_sink=audit_sink,
        )
    assert self_ref.value.code == "COMPONENT_SELF_REFERENCE"

    other = records.make_batch(db, project, "ACME-OTHER")
    [foreign_step] = records.add_steps(db, other, total=1, completed=0)
    with pytest.raises(DomainError) as foreign:
        add_batch_component_use_case(
            db=db,
            batch_id=batch.id,
            data=ComponentCreate(process_step_id=foreign_step.id),
            current_user=operator,
            audit_sink=audit_sink,
        )
    assert foreign.value.code == "PROCESS_STEP_NOT_IN_BATCH"


def test_sample_and_test_result_flow(db, records, project, batch, operator, audit_sink) -> None:
    analyst = records.make_user(db, "Analyst")
    sample = add_sample_use_case(
        db=db,
        batch_id=batch.id,
        data=SampleCreate(sample_id="S-1", sample_type="In-Process"),
        current_user=analyst,
        audit_sink=audit_sink,
    )
    assert sample.collected_by == analyst.id
    assert sample.collected_at is not None

    result = add_test_result_use_case(
        db=db,
        sample_id=sample.id,
        data=schemas.TestResultCreate(test_id="T-1", parameter="Assay", reagents=[{"name": "Methanol", "lot_no": "M-1"}]),
        current_user=analyst,
        audit_sink=audit_sink,
    )
    assert result.result == "Pending"
    assert result.tested_at is None
    assert result.reagents[0]["name"] == "Methanol"

    recorded = record_test_result_use_case(
        db=db,
        test_result_id=result.id,
        data=schemas.TestResultUpdate(result="Pass", value=99.4),
        current_user=analyst,
        audit_sink=audit_sink,
    )
    assert recorded.result == "Pass"
    assert recorded.value == 99.4
    assert recorded.tested_at is not None
    assert audit_sink.actions("test_result_recorded")[0].details == {"from": "Pending", "to": "Pass"}

    with pytest.raises(DomainError) as duplicate:
        add_sample_use_case(
            db=db,
            batch_id=batch.id,
            data=SampleCreate(sample_id="S-1", sample_type="Stability"),
            current_user=analyst,
            audit_sink=audit_sink,
        )
    assert duplicate.value.code == "DUPLICATE_KEY"


def test_sample_component_must_belong_to_batch(db, records, project, batch, operator, audit_sink) -> None:
    other = records.make_batch(db, project, "ACME-OTHER")
    foreign = records.add_component(db, other, "RM-9")

    with pytest.raises(DomainError) as exc_info:
        add_sample_use_case(
            db=db,
            batch_id=batch.id,
            data=SampleCreate(sample_id="S-9", sample_type="In-Process", batch_component_id=foreign.id),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.code == "COMPONENT_NOT_IN_BATCH"


def test_deviation_links_and_closure(db, records, batch, operator, audit_sink) -> None:
    qa = records.make_user(db, "QA")
    component = records.add_component(db, batch, "RM-1")

    deviation = raise_deviation_use_case(
        db=db,
        batch_id=batch.id,
        data=DeviationCreate(
            deviation_no="DEV-1",
            title="Wet material",
            severity="Major",
            linked_entity=LinkedEntityIn(entity_type="BatchComponent", batch_component_id=component.id),
        ),
        current_user=operator,
        audit_sink=audit_sink,
    )
    assert deviation.status == "Open"
    assert deviation.raised_by == operator.id
    assert deviation.raised_at is not None
    assert deviation.linked_batch_component_id == component.id

    batch_link = raise_deviation_use_case(
        db=db,
        batch_id=batch.id,
        data=DeviationCreate(
            deviation_no="DEV-2", title="Late start", severity="Minor",
            linked_entity=LinkedEntityIn(entity_type="Batch"),
        ),
        current_user=operator,
        audit_sink=audit_sink,
    )
    assert batch_link.linked_batch_id == batch.id

    capa = create_capa_use_case(
        db=db, data=CapaCreate(title="Dryer review", owner_id=qa.id), current_user=qa, audit_sink=audit_sink,
    )
    closed = close_deviation_use_case(
        db=db,
        deviation_id=deviation.id,
        data=DeviationClose(action_taken="Material re-dried", capa_id=capa.id),
        current_user=qa,
        audit_sink=audit_sink,
    )
    assert closed.status == "Closed"
    assert closed.resolution_closed_by == qa.id
    assert closed.resolution_capa_id == capa.id

    with pytest.raises(DomainError) as again:
        close_deviation_use_case(
            db=db,
            deviation_id=deviation.id,
            data=DeviationClose(action_taken="twice"),
            current_user=qa,
            audit_sink=audit_sink,
        )
    assert again.value.code == "DEVIATION_ALREADY_CLOSED"


@pytest.mark.parametrize(
    ("link", "code"),
    [
        ({"entity_type": "Sample"}, "DEVIATION_INVALID_LINK"),
        ({"entity_type": "Sample", "sample_id": str(uuid4())}, "DEVIATION_LINK_NOT_FOUND"),
        ({"entity_type": "Equipment", "equipment_id": "EQ-NOPE"}, "DEVIATION_LINK_NOT_FOUND"),
    ],
)
def test_deviation_link_validation(db, batch, operator, audit_sink, link, code) -> None:
    with pytest.raises(DomainError) as exc_info:
        raise_deviation_use_case(
            db=db,
            batch_id=batch.id,
            data=DeviationCreate(deviation_no="DEV-X", title="x", severity="Minor", linked_entity=link),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.code == code
    assert audit_sink.actions("deviation_raised")[0].outcome == code


def test_close_deviation_with_unknown_capa(db, records, batch, operator, audit_sink) -> None:
    deviation = records.add_deviation(db, batch, "DEV-1")

    with pytest.raises(DomainError) as exc_info:
        close_deviation_use_case(
            db=db,
            deviation_id=deviation.id,
            data=DeviationClose(action_taken="done", capa_id=uuid4()),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.code == "CAPA_NOT_FOUND"
    db.expire_all()
    assert deviation.status == "Open"


def test_equipment_events_update_equipment_state(db, records, batch, operator, audit_sink) -> None:
    [step] = records.add_steps(db, batch, total=1, completed=0)
    create_equipment_use_case(
        db=db,
        data=EquipmentCreate(id="EQ-1", name="Reactor", calibration_status="Overdue"),
        current_user=operator,
        audit_sink=audit_sink,
    )

    calibration = record_equipment_event_use_case(
        db=db,
        equipment_id="EQ-1",
        data=EquipmentEventCreate(event_type="Calibration", timestamp=T0),
        current_user=operator,
        audit_sink=audit_sink,
    )
    usage = record_equipment_event_use_case(
        db=db,
        equipment_id="EQ-1",
        data=EquipmentEventCreate(event_type="Usage", related_process_step_id=step.id),
        current_user=operator,
        audit_sink=audit_sink,
    )
    record_equipment_event_use_case(
        db=db,
        equipment_id="EQ-1",
        data=EquipmentEventCreate(event_type="Fault", notes="seal leak"),
        current_user=operator,
        audit_sink=audit_sink,
    )

    equipment = db.query(Equipment).filter(Equipment.id == "EQ-1").one()
    assert calibration.recorded_by == operator.id
    assert equipment.calibration_status == "Valid"
    assert equipment.last_calibrated_on is not None
    assert equipment.status == "Faulted"
    assert usage.related_batch_id == batch.id
    assert usage.timestamp is not None

    with pytest.raises(DomainError) as duplicate:
        create_equipment_use_case(
            db=db,
            data=EquipmentCreate(id="EQ-1", name="Reactor again"),
            current_user=operator,
            audit_sink=audit_sink,
        )
    assert duplicate.value.code == "DUPLICATE_KEY"


def test_equipment_event_step_must_match_batch(db, records, project, batch, operator, audit_sink) -> None:
    other = records.make_batch(db, project, "ACME-OTHER")
    [step] = records.add_steps(db, other, total=1, completed=0)
    db.add(Equipment(id="EQ-1", name="Reactor"))
    db.commit()

    with pytest.raises(DomainError) as exc_info:
        record_equipment_event_use_case(
            db=db,
            equipment_id="EQ-1",
            data=EquipmentEventCreate(event_type="Usage", related_batch_id=batch.id, related_process_step_id=step.id),
            current_user=operator,
            audit_sink=audit_sink,
        )

    assert exc_info.value.code == "PROCESS_STEP_NOT_IN_BATCH"
