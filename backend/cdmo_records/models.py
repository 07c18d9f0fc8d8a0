"""SQLAlchemy models for CDMO batch records."""
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Date, DateTime, Float, ForeignKey,
    Index, Integer, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from .database import Base


BATCH_STATUSES = ("Not Started", "In-Process", "On-Hold", "Completed", "Released", "Rejected")
PROJECT_STATUSES = ("Ongoing", "Completed", "On-Hold")
DATASOURCES = ("ERP", "MES", "LIMS", "QMS")
DEVIATION_SEVERITIES = ("Minor", "Major", "Critical")
DEVIATION_STATUSES = ("Open", "In-Progress", "Closed")
OPEN_DEVIATION_STATUSES = ("Open", "In-Progress")
CAPA_STATUSES = ("Open", "In-Progress", "Closed")
LINKED_ENTITY_TYPES = ("Batch", "Sample", "TestResult", "ProcessStep", "Equipment", "BatchComponent")
TEST_RESULT_VALUES = ("Pass", "Fail", "NA", "Pending", "In-Progress")
PENDING_TEST_RESULTS = ("Pending", "In-Progress")
SAMPLE_TYPES = ("In-Process", "Finished Product", "Stability")
QC_STATUSES = ("Approved", "Rejected", "Pending")
QA_APPROVAL_STATUSES = ("Approved", "Rejected", "Hold")
EQUIPMENT_STATUSES = ("Available", "In Use", "Maintenance", "Faulted")
CALIBRATION_STATUSES = ("Valid", "Due Soon", "Due", "Overdue", "Expired")
CALIBRATION_DUE_STATUSES = ("Due Soon", "Due", "Overdue", "Expired")
EQUIPMENT_EVENT_TYPES = ("Usage", "Calibration", "Cleaning", "Maintenance", "Validation", "Fault", "Inspection")
ASSIGNMENT_ROLES = ("Project Manager", "Lab Authority", "Quality Authority")
LOG_LEVELS = ("info", "warn", "error")


class Role(Base):
    """Named role owning a set of (resource, action) grants."""
    __tablename__ = "roles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    permissions = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
        order_by="RolePermission.resource",
    )
    users = relationship("User", back_populates="role")


class RolePermission(Base):
    """Single capability grant."""
    __tablename__ = "role_permissions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    role_id = Column(Uuid, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    resource = Column(String(50), nullable=False)
    action = Column(String(30), nullable=False)

    __table_args__ = (
        UniqueConstraint("role_id", "resource", "action", name="uq_role_permission"),
    )

    role = relationship("Role", back_populates="permissions")


class User(Base):
    """User model."""
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    department = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    role = relationship("Role", back_populates="users")
    project_assignments = relationship(
        "ProjectAssignment",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class ProjectAssignment(Base):
    """Scoping pair: a user works on a project in a given capacity."""
    __tablename__ = "project_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False, index=True)
    assigned_role = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "project_id", name="uq_project_assignment_user_project"),
        CheckConstraint(assigned_role.in_(ASSIGNMENT_ROLES), name="chk_project_assignment_role"),
    )

    user = relationship("User", back_populates="project_assignments")
    project = relationship("Project")


class Customer(Base):
    """Customer (sponsor) model."""
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, index=True)
    country = Column(String(100), nullable=True)
    contact_person = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    projects = relationship("Project", back_populates="customer")
    batches = relationship("Batch", back_populates="customer")


class Project(Base):
    """Project model."""
    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_code = Column(String(50), unique=True, nullable=False, index=True)
    project_name = Column(String(255), nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="Ongoing")
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(PROJECT_STATUSES), name="chk_project_status"),
    )

    customer = relationship("Customer", back_populates="projects")
    batches = relationship("Batch", back_populates="project")


class Batch(Base):
    """Manufacturing batch model."""
    __tablename__ = "batches"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    api_batch_id = Column(String(100), unique=True, nullable=False, index=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False, index=True)
    product_name = Column(String(255), nullable=True)
    plant_location = Column(String(255), nullable=True)
    batch_size = Column(Float, nullable=True)
    batch_size_unit = Column(String(20), nullable=True)
    target_yield = Column(Float, nullable=True)
    actual_yield = Column(Float, nullable=True)
    datasource = Column(String(10), nullable=True)
    status = Column(String(20), nullable=False, default="Not Started", index=True)
    targeted_end_date = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    released_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    release_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(BATCH_STATUSES), name="chk_batch_status"),
        CheckConstraint(
            "datasource IS NULL OR datasource IN ('ERP', 'MES', 'LIMS', 'QMS')",
            name="chk_batch_datasource",
        ),
        CheckConstraint(
            "(status = 'Released' AND released_at IS NOT NULL AND released_by IS NOT NULL) "
            "OR (status <> 'Released' AND released_at IS NULL AND released_by IS NULL)",
            name="chk_batch_release_stamp",
        ),
        Index("idx_batch_customer_status", "customer_id", "status"),
    )

    customer = relationship("Customer", back_populates="batches")
    project = relationship("Project", back_populates="batches")
    releaser = relationship("User", foreign_keys=[released_by])
    process_steps = relationship(
        "ProcessStep",
        back_populates="batch",
        order_by="ProcessStep.step_sequence",
    )
    components = relationship(
        "BatchComponent",
        back_populates="batch",
        foreign_keys="BatchComponent.batch_id",
    )
    samples = relationship("Sample", back_populates="batch")
    deviations = relationship("Deviation", back_populates="batch", foreign_keys="Deviation.batch_id")
    equipment_events = relationship("EquipmentEvent", back_populates="related_batch")


class ProcessStep(Base):
    """Ordered manufacturing stage within a batch."""
    __tablename__ = "process_steps"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=False, index=True)
    step_name = Column(String(255), nullable=False)
    step_sequence = Column(Integer, nullable=False)
    start_timestamp = Column(DateTime(timezone=True), nullable=True)
    end_timestamp = Column(DateTime(timezone=True), nullable=True)
    # Snapshot of equipment state at execution time: list of
    # {equipment, equipment_status, calibration_status, last_cleaned_on, last_calibrated_on, qa_approval_status}
    equipment_snapshot = Column(JSON, default=list)
    qa_approval_status = Column(String(20), nullable=False, default="Approved")
    qa_reviewed_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(qa_approval_status.in_(QA_APPROVAL_STATUSES), name="chk_process_step_qa"),
        Index("idx_process_step_batch_sequence", "batch_id", "step_sequence"),
    )

    batch = relationship("Batch", back_populates="process_steps")


class BatchComponent(Base):
    """Raw material, intermediate or API consumed by a batch."""
    __tablename__ = "batch_components"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=False, index=True)
    # Step that consumed the component; NULL means consumed across the whole batch.
    process_step_id = Column(Uuid, ForeignKey("process_steps.id"), nullable=True, index=True)
    # Human-readable upstream batch id as recorded on the shop floor.
    component_batch_id = Column(String(100), nullable=True, index=True)
    # Resolved upstream batch (lookup key, not ownership).
    source_batch_id = Column(Uuid, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True, index=True)
    component_type = Column(String(50), nullable=True)
    component_name = Column(String(255), nullable=True)
    material_code = Column(String(100), nullable=True)
    supplier_name = Column(String(255), nullable=True)
    supplier_lot_id = Column(String(100), nullable=True)
    internal_lot_id = Column(String(100), nullable=True)
    quantity_used = Column(Float, nullable=True)
    uom = Column(String(20), nullable=True)
    usage_ts = Column(DateTime(timezone=True), nullable=True)
    coa_received = Column(Boolean, default=False, nullable=False)
    coa_approval_date = Column(DateTime(timezone=True), nullable=True)
    coa_reviewed_by = Column(String(255), nullable=True)
    qc_status = Column(String(20), nullable=False, default="Pending")
    qc_approval_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(qc_status.in_(QC_STATUSES), name="chk_batch_component_qc"),
    )

    batch = relationship("Batch", back_populates="components", foreign_keys=[batch_id])
    source_batch = relationship("Batch", foreign_keys=[source_batch_id])
    process_step = relationship("ProcessStep")
    samples = relationship("Sample", back_populates="batch_component")


class Sample(Base):
    """Sample collected from a batch."""
    __tablename__ = "samples"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sample_id = Column(String(100), unique=True, nullable=False, index=True)
    batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=False, index=True)
    batch_component_id = Column(Uuid, ForeignKey("batch_components.id"), nullable=True, index=True)
    sample_type = Column(String(30), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=True)
    collected_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    storage_location = Column(String(255), nullable=True)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(sample_type.in_(SAMPLE_TYPES), name="chk_sample_type"),
    )

    batch = relationship("Batch", back_populates="samples")
    batch_component = relationship("BatchComponent", back_populates="samples")
    test_results = relationship("TestResult", back_populates="sample", order_by="TestResult.tested_at")


class TestResult(Base):
    """Analytical measurement against a sample."""
    __tablename__ = "test_results"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    test_id = Column(String(100), unique=True, nullable=False, index=True)
    sample_record_id = Column(Uuid, ForeignKey("samples.id"), nullable=False, index=True)
    method_id = Column(String(100), nullable=True)
    parameter = Column(String(255), nullable=False)
    value = Column(Float, nullable=True)
    unit = Column(String(30), nullable=True)
    result = Column(String(20), nullable=False, default="Pending", index=True)
    specification = Column(String(255), nullable=True)
    tested_at = Column(DateTime(timezone=True), nullable=True)
    tested_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    equipment_used = Column(JSON, default=list)
    reagents = Column(JSON, default=list)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(result.in_(TEST_RESULT_VALUES), name="chk_test_result_value"),
    )

    sample = relationship("Sample", back_populates="test_results")


class CAPA(Base):
    """Corrective and preventive action."""
    __tablename__ = "capas"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="Open")
    owner_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    opened_at = Column(DateTime(timezone=True), server_default=func.now())
    closed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(CAPA_STATUSES), name="chk_capa_status"),
    )


class Deviation(Base):
    """Quality nonconformance raised against a batch."""
    __tablename__ = "deviations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    deviation_no = Column(String(100), unique=True, nullable=False, index=True)
    batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="Open", index=True)
    raised_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    raised_at = Column(DateTime(timezone=True), server_default=func.now())

    # Tagged link: linked_entity_type selects which reference below is meaningful.
    linked_entity_type = Column(String(30), nullable=True)
    linked_batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=True)
    linked_sample_id = Column(Uuid, ForeignKey("samples.id"), nullable=True)
    linked_test_result_id = Column(Uuid, ForeignKey("test_results.id"), nullable=True)
    linked_process_step_id = Column(Uuid, ForeignKey("process_steps.id"), nullable=True)
    linked_batch_component_id = Column(Uuid, ForeignKey("batch_components.id"), nullable=True, index=True)
    linked_equipment_id = Column(String(64), ForeignKey("equipment.id"), nullable=True, index=True)

    resolution_action_taken = Column(Text, nullable=True)
    resolution_closed_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    resolution_closed_at = Column(DateTime(timezone=True), nullable=True)
    resolution_capa_id = Column(Uuid, ForeignKey("capas.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(severity.in_(DEVIATION_SEVERITIES), name="chk_deviation_severity"),
        CheckConstraint(status.in_(DEVIATION_STATUSES), name="chk_deviation_status"),
        CheckConstraint(
            "linked_entity_type IS NULL OR linked_entity_type IN "
            "('Batch', 'Sample', 'TestResult', 'ProcessStep', 'Equipment', 'BatchComponent')",
            name="chk_deviation_linked_entity_type",
        ),
        CheckConstraint(
            "status = 'Closed' OR resolution_closed_at IS NULL",
            name="chk_deviation_resolution_on_close",
        ),
        Index("idx_deviation_batch_status", "batch_id", "status"),
    )

    batch = relationship("Batch", back_populates="deviations", foreign_keys=[batch_id])
    capa = relationship("CAPA")


class Equipment(Base):
    """Equipment identified by a human-assigned id."""
    __tablename__ = "equipment"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    model = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="Available")
    calibration_status = Column(String(20), nullable=False, default="Valid")
    qa_approval_status = Column(String(20), nullable=False, default="Approved")
    last_calibrated_on = Column(DateTime(timezone=True), nullable=True)
    last_cleaned_on = Column(DateTime(timezone=True), nullable=True)
    next_maintenance_due = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(EQUIPMENT_STATUSES), name="chk_equipment_status"),
        CheckConstraint(calibration_status.in_(CALIBRATION_STATUSES), name="chk_equipment_calibration"),
        CheckConstraint(qa_approval_status.in_(QA_APPROVAL_STATUSES), name="chk_equipment_qa"),
    )

    events = relationship("EquipmentEvent", back_populates="equipment")


class EquipmentEvent(Base):
    """Usage, calibration, cleaning or fault record for a piece of equipment."""
    __tablename__ = "equipment_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    equipment_id = Column(String(64), ForeignKey("equipment.id"), nullable=False, index=True)
    event_type = Column(String(20), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    related_batch_id = Column(Uuid, ForeignKey("batches.id"), nullable=True, index=True)
    related_process_step_id = Column(Uuid, ForeignKey("process_steps.id"), nullable=True)
    notes = Column(Text, nullable=True)
    recorded_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(event_type.in_(EQUIPMENT_EVENT_TYPES), name="chk_equipment_event_type"),
    )

    equipment = relationship("Equipment", back_populates="events")
    related_batch = relationship("Batch", back_populates="equipment_events")
    related_process_step = relationship("ProcessStep")


class AuditLog(Base):
    """Audit record: one per request outcome and per write attempt."""
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    level = Column(String(10), nullable=False, default="info")
    message = Column(Text, nullable=False)
    action = Column(String(50), nullable=True, index=True)
    outcome = Column(String(80), nullable=True)
    method = Column(String(10), nullable=True)
    url = Column(String(500), nullable=True)
    status = Column(Integer, nullable=True)
    # Plain ids: audit rows outlive the records they mention.
    user_id = Column(Uuid, nullable=True, index=True)
    user_email = Column(String(255), nullable=True)
    user_role = Column(String(50), nullable=True)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(100), nullable=True)
    details = Column(JSON, default=dict)
    duration_ms = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        CheckConstraint(level.in_(LOG_LEVELS), name="chk_audit_log_level"),
    )
