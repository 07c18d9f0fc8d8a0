"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# Auth and accounts
class LoginRequest(BaseModel):
    """Login by username or email."""
    username: Optional[str] = None
    email: Optional[str] = None
    password: str = Field(..., min_length=1)


class RoleSummary(BaseModel):
    id: UUID
    name: str

    model_config = ConfigDict(from_attributes=True)


class UserResponse(BaseModel):
    id: UUID
    username: str
    email: str
    department: Optional[str] = None
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    role: RoleSummary

    model_config = ConfigDict(from_attributes=True)


class ProjectAssignmentResponse(BaseModel):
    project_id: UUID
    assigned_role: str

    model_config = ConfigDict(from_attributes=True)


class AuthUserResponse(UserResponse):
    permissions: list[str] = []
    project_assignments: list[ProjectAssignmentResponse] = []


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: AuthUserResponse


class RegisterAdminRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)
    department: Optional[str] = None


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)
    role: str = Field(..., description="Role name")
    department: Optional[str] = None


class ProjectAssignmentIn(BaseModel):
    project_id: UUID
    assigned_role: Literal["Project Manager", "Lab Authority", "Quality Authority"]


class AssignUserRequest(BaseModel):
    user_id: UUID
    role: Optional[str] = None
    assignments: list[ProjectAssignmentIn] = []


class PermissionFlags(BaseModel):
    resource: str
    canView: bool = False
    canEdit: bool = False
    canAddDel: bool = False


class RolePermissionResponse(BaseModel):
    resource: str
    action: str

    model_config = ConfigDict(from_attributes=True)


class RoleResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    permissions: list[RolePermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    description: Optional[str] = None
    permissions: list[PermissionFlags] = []
    # Extra grants outside the flag matrix, as "resource:action".
    capabilities: list[str] = []


class UpdatePermissionsRequest(BaseModel):
    permissions: list[PermissionFlags]
    capabilities: list[str] = []


# Batch lifecycle
class ReleaseRequest(BaseModel):
    notes: Optional[str] = None


class ForceReleaseRequest(BaseModel):
    reason: str = Field(..., min_length=3)
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str
    notes: Optional[str] = None


class BatchActionRequest(BaseModel):
    action: str
    notes: Optional[str] = None


class BatchResponse(BaseModel):
    id: UUID
    api_batch_id: str
    customer_id: UUID
    project_id: UUID
    product_name: Optional[str] = None
    plant_location: Optional[str] = None
    batch_size: Optional[float] = None
    batch_size_unit: Optional[str] = None
    target_yield: Optional[float] = None
    actual_yield: Optional[float] = None
    datasource: Optional[str] = None
    status: str
    targeted_end_date: Optional[datetime] = None
    released_at: Optional[datetime] = None
    released_by: Optional[UUID] = None
    release_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BatchStatusResponse(BaseModel):
    id: UUID
    api_batch_id: str
    status: str
    released_at: Optional[datetime] = None
    released_by: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReleaseResponse(BaseModel):
    batchId: UUID
    api_batch_id: str
    status: str
    released_at: datetime
    released_by: UUID
    release_notes: Optional[str] = None
    customer_name: Optional[str] = None
    project_name: Optional[str] = None
    forced: bool = False


# Record creation
class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    country: Optional[str] = None
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CustomerResponse(CustomerCreate):
    id: UUID
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ProjectCreate(BaseModel):
    project_code: str = Field(..., min_length=1, max_length=50)
    project_name: str = Field(..., min_length=1, max_length=255)
    customer_id: UUID
    status: Literal["Ongoing", "Completed", "On-Hold"] = "Ongoing"
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ProjectResponse(ProjectCreate):
    id: UUID

    model_config = ConfigDict(from_attributes=True)


class BatchCreate(BaseModel):
    api_batch_id: str = Field(..., min_length=1, max_length=100)
    project_id: UUID
    product_name: Optional[str] = None
    plant_location: Optional[str] = None
    batch_size: Optional[float] = Field(None, ge=0)
    batch_size_unit: Optional[str] = None
    target_yield: Optional[float] = None
    actual_yield: Optional[float] = None
    datasource: Optional[Literal["ERP", "MES", "LIMS", "QMS"]] = None
    status: Literal["Not Started", "In-Process"] = "Not Started"
    targeted_end_date: Optional[datetime] = None


class EquipmentSnapshotIn(BaseModel):
    equipment: str
    equipment_status: Literal["Clean", "Calibrated", "In Use", "Faulted"]
    calibration_status: Literal["Valid", "Expired", "N/A"]
    last_cleaned_on: Optional[datetime] = None
    last_calibrated_on: Optional[datetime] = None
    qa_approval_status: Literal["Approved", "Rejected", "Hold"] = "Approved"


class ProcessStepCreate(BaseModel):
    step_name: str = Field(..., min_length=1, max_length=255)
    step_sequence: int = Field(..., ge=1)
    start_timestamp: Optional[datetime] = None
    end_timestamp: Optional[datetime] = None
    qa_approval_status: Literal["Approved", "Rejected", "Hold"] = "Approved"
    equipment: list[EquipmentSnapshotIn] = []


class StepCompleteRequest(BaseModel):
    end_timestamp: Optional[datetime] = None


class ProcessStepResponse(BaseModel):
    id: UUID
    batch_id: UUID
    step_name: str
    step_sequence: int
    start_timestamp: Optional[datetime] = None
    end_timestamp: Optional[datetime] = None
    qa_approval_status: str
    equipment_snapshot: list[dict] = []

    model_config = ConfigDict(from_attributes=True)


class ComponentCreate(BaseModel):
    component_type: Optional[str] = None
    component_name: Optional[str] = None
    material_code: Optional[str] = None
    component_batch_id: Optional[str] = None
    process_step_id: Optional[UUID] = None
    supplier_name: Optional[str] = None
    supplier_lot_id: Optional[str] = None
    internal_lot_id: Optional[str] = None
    quantity_used: Optional[float] = Field(None, ge=0)
    uom: Optional[str] = None
    usage_ts: Optional[datetime] = None
    coa_received: bool = False
    coa_approval_date: Optional[datetime] = None
    coa_reviewed_by: Optional[str] = None
    qc_status: Literal["Approved", "Rejected", "Pending"] = "Pending"
    qc_approval_date: Optional[datetime] = None


class ComponentResponse(ComponentCreate):
    id: UUID
    batch_id: UUID
    source_batch_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class SampleCreate(BaseModel):
    sample_id: str = Field(..., min_length=1, max_length=100)
    sample_type: Literal["In-Process", "Finished Product", "Stability"]
    batch_component_id: Optional[UUID] = None
    collected_at: Optional[datetime] = None
    storage_location: Optional[str] = None
    remarks: Optional[str] = None


class SampleResponse(SampleCreate):
    id: UUID
    batch_id: UUID
    collected_by: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class ReagentIn(BaseModel):
    reagent_id: Optional[str] = None
    name: Optional[str] = None
    lot_no: Optional[str] = None
    expiry: Optional[date] = None


TestResultValue = Literal["Pass", "Fail", "NA", "Pending", "In-Progress"]


class TestResultCreate(BaseModel):
    test_id: str = Field(..., min_length=1, max_length=100)
    parameter: str = Field(..., min_length=1)
    method_id: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    result: TestResultValue = "Pending"
    specification: Optional[str] = None
    tested_at: Optional[datetime] = None
    equipment_used: list[str] = []
    reagents: list[ReagentIn] = []
    remarks: Optional[str] = None


class TestResultUpdate(BaseModel):
    result: TestResultValue
    value: Optional[float] = None
    tested_at: Optional[datetime] = None
    remarks: Optional[str] = None


class TestResultResponse(BaseModel):
    id: UUID
    test_id: str
    sample_record_id: UUID
    parameter: str
    method_id: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    result: str
    specification: Optional[str] = None
    tested_at: Optional[datetime] = None
    tested_by: Optional[UUID] = None
    equipment_used: list = []
    reagents: list = []
    remarks: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LinkedEntityIn(BaseModel):
    entity_type: Literal["Batch", "Sample", "TestResult", "ProcessStep", "Equipment", "BatchComponent"]
    batch_id: Optional[UUID] = None
    sample_id: Optional[UUID] = None
    test_result_id: Optional[UUID] = None
    process_step_id: Optional[UUID] = None
    batch_component_id: Optional[UUID] = None
    equipment_id: Optional[str] = None


class DeviationCreate(BaseModel):
    deviation_no: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    severity: Literal["Minor", "Major", "Critical"]
    status: Literal["Open", "In-Progress"] = "Open"
    linked_entity: Optional[LinkedEntityIn] = None


class DeviationClose(BaseModel):
    action_taken: str = Field(..., min_length=1)
    capa_id: Optional[UUID] = None


class DeviationResponse(BaseModel):
    id: UUID
    deviation_no: str
    batch_id: UUID
    title: str
    description: Optional[str] = None
    severity: str
    status: str
    raised_by: Optional[UUID] = None
    raised_at: Optional[datetime] = None
    linked_entity_type: Optional[str] = None
    linked_batch_component_id: Optional[UUID] = None
    linked_equipment_id: Optional[str] = None
    resolution_action_taken: Optional[str] = None
    resolution_closed_by: Optional[UUID] = None
    resolution_closed_at: Optional[datetime] = None
    resolution_capa_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class CapaCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: Literal["Open", "In-Progress", "Closed"] = "Open"
    owner_id: Optional[UUID] = None


class CapaResponse(CapaCreate):
    id: UUID
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EquipmentCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    model: Optional[str] = None
    location: Optional[str] = None
    status: Literal["Available", "In Use", "Maintenance", "Faulted"] = "Available"
    calibration_status: Literal["Valid", "Due Soon", "Due", "Overdue", "Expired"] = "Valid"
    qa_approval_status: Literal["Approved", "Rejected", "Hold"] = "Approved"
    last_calibrated_on: Optional[datetime] = None
    last_cleaned_on: Optional[datetime] = None
    next_maintenance_due: Optional[datetime] = None


class EquipmentResponse(EquipmentCreate):
    model_config = ConfigDict(from_attributes=True)


class EquipmentEventCreate(BaseModel):
    event_type: Literal["Usage", "Calibration", "Cleaning", "Maintenance", "Validation", "Fault", "Inspection"]
    timestamp: Optional[datetime] = None
    related_batch_id: Optional[UUID] = None
    related_process_step_id: Optional[UUID] = None
    notes: Optional[str] = None


class EquipmentEventResponse(EquipmentEventCreate):
    id: UUID
    equipment_id: str

    model_config = ConfigDict(from_attributes=True)


class AuditLogResponse(BaseModel):
    id: UUID
    level: str
    message: str
    action: Optional[str] = None
    outcome: Optional[str] = None
    method: Optional[str] = None
    url: Optional[str] = None
    status: Optional[int] = None
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: Optional[dict] = None
    duration_ms: Optional[float] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
