"""Plain-dict views of batch records used by the reporting endpoints."""
from __future__ import annotations

from ..models import (
    CAPA,
    Batch,
    BatchComponent,
    Deviation,
    EquipmentEvent,
    ProcessStep,
    Sample,
    TestResult,
)

COMPONENT_DESCRIPTIONS = {
    "API": "Primary therapeutic compound for pharmaceutical treatment",
    "Raw Material": "Raw material component for manufacturing process",
    "Excipient": "Raw material component for manufacturing process",
    "Intermediate": "Raw material component for manufacturing process",
}
DEFAULT_COMPONENT_DESCRIPTION = "Manufacturing component"


def component_description(component_type: str | None) -> str:
    return COMPONENT_DESCRIPTIONS.get(component_type or "", DEFAULT_COMPONENT_DESCRIPTION)


def sample_status(test_results: list[TestResult]) -> str:
    """Pending without results, Failed if any result failed, otherwise Passed."""
    if not test_results:
        return "Pending"
    if any(result.result == "Fail" for result in test_results):
        return "Failed"
    return "Passed"


def batch_brief(batch: Batch | None) -> dict | None:
    if batch is None:
        return None
    return {
        "id": batch.id,
        "api_batch_id": batch.api_batch_id,
        "product_name": batch.product_name,
        "status": batch.status,
        "created_at": batch.created_at,
    }


def process_step_view(step: ProcessStep) -> dict:
    return {
        "id": step.id,
        "step_name": step.step_name,
        "step_sequence": step.step_sequence,
        "start_timestamp": step.start_timestamp,
        "end_timestamp": step.end_timestamp,
        "qa_approval_status": step.qa_approval_status,
        "equipment": step.equipment_snapshot or [],
        "completed": step.end_timestamp is not None,
    }


def component_view(component: BatchComponent) -> dict:
    return {
        "id": component.id,
        "component_type": component.component_type,
        "component_name": component.component_name,
        "material_code": component.material_code,
        "component_batch_id": component.component_batch_id,
        "source_batch_id": component.source_batch_id,
        "process_step_id": component.process_step_id,
        "supplier_name": component.supplier_name,
        "supplier_lot_id": component.supplier_lot_id,
        "internal_lot_id": component.internal_lot_id,
        "quantity_used": component.quantity_used,
        "uom": component.uom,
        "usage_ts": component.usage_ts,
        "coa": {
            "received": component.coa_received,
            "approval_date": component.coa_approval_date,
            "reviewed_by": component.coa_reviewed_by,
        },
        "qc": {
            "status": component.qc_status,
            "approval_date": component.qc_approval_date,
        },
    }


def test_result_view(result: TestResult) -> dict:
    return {
        "id": result.id,
        "test_id": result.test_id,
        "method_id": result.method_id,
        "parameter": result.parameter,
        "value": result.value,
        "unit": result.unit,
        "result": result.result,
        "specification": result.specification,
        "tested_at": result.tested_at,
        "tested_by": result.tested_by,
        "equipment_used": result.equipment_used or [],
        "reagents": result.reagents or [],
        "remarks": result.remarks,
    }


def sample_view(sample: Sample, *, with_results: bool = True) -> dict:
    view = {
        "id": sample.id,
        "sample_id": sample.sample_id,
        "sample_type": sample.sample_type,
        "batch_component_id": sample.batch_component_id,
        "collected_at": sample.collected_at,
        "collected_by": sample.collected_by,
        "storage_location": sample.storage_location,
        "remarks": sample.remarks,
        "status": sample_status(sample.test_results),
    }
    if with_results:
        view["testResults"] = [test_result_view(result) for result in sample.test_results]
    return view


def linked_entity_view(deviation: Deviation) -> dict | None:
    if not deviation.linked_entity_type:
        return None
    return {
        "entity_type": deviation.linked_entity_type,
        "batch": deviation.linked_batch_id,
        "sample": deviation.linked_sample_id,
        "test_result": deviation.linked_test_result_id,
        "process_step": deviation.linked_process_step_id,
        "batch_component": deviation.linked_batch_component_id,
        "equipment": deviation.linked_equipment_id,
    }


def capa_view(capa: CAPA | None) -> dict | None:
    if capa is None:
        return None
    return {
        "id": capa.id,
        "title": capa.title,
        "description": capa.description,
        "status": capa.status,
        "owner_id": capa.owner_id,
        "opened_at": capa.opened_at,
        "closed_at": capa.closed_at,
    }


def deviation_view(deviation: Deviation) -> dict:
    resolution = None
    if deviation.resolution_closed_at is not None:
        resolution = {
            "action_taken": deviation.resolution_action_taken,
            "closed_by": deviation.resolution_closed_by,
            "closed_at": deviation.resolution_closed_at,
            "linked_capa": deviation.resolution_capa_id,
        }
    return {
        "id": deviation.id,
        "deviation_no": deviation.deviation_no,
        "title": deviation.title,
        "description": deviation.description,
        "severity": deviation.severity,
        "status": deviation.status,
        "raised_by": deviation.raised_by,
        "raised_at": deviation.raised_at,
        "linked_entity": linked_entity_view(deviation),
        "resolution": resolution,
    }


def equipment_event_view(event: EquipmentEvent) -> dict:
    return {
        "id": event.id,
        "equipment_id": event.equipment_id,
        "event_type": event.event_type,
        "timestamp": event.timestamp,
        "related_batch_id": event.related_batch_id,
        "related_process_step_id": event.related_process_step_id,
        "notes": event.notes,
    }
