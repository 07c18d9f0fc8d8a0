"""initial batch record schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "roles",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_roles_name", "roles", ["name"], unique=True)

    op.create_table(
        "role_permissions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("resource", sa.String(length=50), nullable=False),
        sa.Column("action", sa.String(length=30), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("role_id", "resource", "action", name="uq_role_permission"),
    )
    op.create_index("ix_role_permissions_role_id", "role_permissions", ["role_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("department", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role_id", "users", ["role_id"], unique=False)

    op.create_table(
        "customers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("contact_person", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_name", "customers", ["name"], unique=False)

    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_code", sa.String(length=50), nullable=False),
        sa.Column("project_name", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Ongoing"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('Ongoing', 'Completed', 'On-Hold')", name="chk_project_status"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_project_code", "projects", ["project_code"], unique=True)
    op.create_index("ix_projects_customer_id", "projects", ["customer_id"], unique=False)

    op.create_table(
        "project_assignments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_role", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint(
            "assigned_role IN ('Project Manager', 'Lab Authority', 'Quality Authority')",
            name="chk_project_assignment_role",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "project_id", name="uq_project_assignment_user_project"),
    )
    op.create_index("ix_project_assignments_user_id", "project_assignments", ["user_id"], unique=False)
    op.create_index("ix_project_assignments_project_id", "project_assignments", ["project_id"], unique=False)

    op.create_table(
        "batches",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("api_batch_id", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("plant_location", sa.String(length=255), nullable=True),
        sa.Column("batch_size", sa.Float(), nullable=True),
        sa.Column("batch_size_unit", sa.String(length=20), nullable=True),
        sa.Column("target_yield", sa.Float(), nullable=True),
        sa.Column("actual_yield", sa.Float(), nullable=True),
        sa.Column("datasource", sa.String(length=10), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Not Started"),
        sa.Column("targeted_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_by", sa.Uuid(), nullable=True),
        sa.Column("release_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('Not Started', 'In-Process', 'On-Hold', 'Completed', 'Released', 'Rejected')",
            name="chk_batch_status",
        ),
        sa.CheckConstraint(
            "datasource IS NULL OR datasource IN ('ERP', 'MES', 'LIMS', 'QMS')",
            name="chk_batch_datasource",
        ),
        sa.CheckConstraint(
            "(status = 'Released' AND released_at IS NOT NULL AND released_by IS NOT NULL) "
            "OR (status <> 'Released' AND released_at IS NULL AND released_by IS NULL)",
            name="chk_batch_release_stamp",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.ForeignKeyConstraint(["released_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batches_api_batch_id", "batches", ["api_batch_id"], unique=True)
    op.create_index("ix_batches_customer_id", "batches", ["customer_id"], unique=False)
    op.create_index("ix_batches_project_id", "batches", ["project_id"], unique=False)
    op.create_index("ix_batches_status", "batches", ["status"], unique=False)
    op.create_index("ix_batches_created_at", "batches", ["created_at"], unique=False)
    op.create_index("idx_batch_customer_status", "batches", ["customer_id", "status"], unique=False)

    op.create_table(
        "process_steps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("step_name", sa.String(length=255), nullable=False),
        sa.Column("step_sequence", sa.Integer(), nullable=False),
        sa.Column("start_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("equipment_snapshot", sa.JSON(), nullable=True),
        sa.Column("qa_approval_status", sa.String(length=20), nullable=False, server_default="Approved"),
        sa.Column("qa_reviewed_by", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("qa_approval_status IN ('Approved', 'Rejected', 'Hold')", name="chk_process_step_qa"),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["qa_reviewed_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_process_steps_batch_id", "process_steps", ["batch_id"], unique=False)
    op.create_index("idx_process_step_batch_sequence", "process_steps", ["batch_id", "step_sequence"], unique=False)

    op.create_table(
        "batch_components",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("process_step_id", sa.Uuid(), nullable=True),
        sa.Column("component_batch_id", sa.String(length=100), nullable=True),
        sa.Column("source_batch_id", sa.Uuid(), nullable=True),
        sa.Column("component_type", sa.String(length=50), nullable=True),
        sa.Column("component_name", sa.String(length=255), nullable=True),
        sa.Column("material_code", sa.String(length=100), nullable=True),
        sa.Column("supplier_name", sa.String(length=255), nullable=True),
        sa.Column("supplier_lot_id", sa.String(length=100), nullable=True),
        sa.Column("internal_lot_id", sa.String(length=100), nullable=True),
        sa.Column("quantity_used", sa.Float(), nullable=True),
        sa.Column("uom", sa.String(length=20), nullable=True),
        sa.Column("usage_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("coa_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("coa_approval_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("coa_reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("qc_status", sa.String(length=20), nullable=False, server_default="Pending"),
        sa.Column("qc_approval_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("qc_status IN ('Approved', 'Rejected', 'Pending')", name="chk_batch_component_qc"),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["process_step_id"], ["process_steps.id"]),
        sa.ForeignKeyConstraint(["source_batch_id"], ["batches.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batch_components_batch_id", "batch_components", ["batch_id"], unique=False)
    op.create_index("ix_batch_components_process_step_id", "batch_components", ["process_step_id"], unique=False)
    op.create_index("ix_batch_components_component_batch_id", "batch_components", ["component_batch_id"], unique=False)
    op.create_index("ix_batch_components_source_batch_id", "batch_components", ["source_batch_id"], unique=False)

    op.create_table(
        "samples",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sample_id", sa.String(length=100), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("batch_component_id", sa.Uuid(), nullable=True),
        sa.Column("sample_type", sa.String(length=30), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("collected_by", sa.Uuid(), nullable=True),
        sa.Column("storage_location", sa.String(length=255), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("sample_type IN ('In-Process', 'Finished Product', 'Stability')", name="chk_sample_type"),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["batch_component_id"], ["batch_components.id"]),
        sa.ForeignKeyConstraint(["collected_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_samples_sample_id", "samples", ["sample_id"], unique=True)
    op.create_index("ix_samples_batch_id", "samples", ["batch_id"], unique=False)
    op.create_index("ix_samples_batch_component_id", "samples", ["batch_component_id"], unique=False)

    op.create_table(
        "test_results",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("test_id", sa.String(length=100), nullable=False),
        sa.Column("sample_record_id", sa.Uuid(), nullable=False),
        sa.Column("method_id", sa.String(length=100), nullable=True),
        sa.Column("parameter", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(length=30), nullable=True),
        sa.Column("result", sa.String(length=20), nullable=False, server_default="Pending"),
        sa.Column("specification", sa.String(length=255), nullable=True),
        sa.Column("tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tested_by", sa.Uuid(), nullable=True),
        sa.Column("equipment_used", sa.JSON(), nullable=True),
        sa.Column("reagents", sa.JSON(), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "result IN ('Pass', 'Fail', 'NA', 'Pending', 'In-Progress')",
            name="chk_test_result_value",
        ),
        sa.ForeignKeyConstraint(["sample_record_id"], ["samples.id"]),
        sa.ForeignKeyConstraint(["tested_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_test_results_test_id", "test_results", ["test_id"], unique=True)
    op.create_index("ix_test_results_sample_record_id", "test_results", ["sample_record_id"], unique=False)
    op.create_index("ix_test_results_result", "test_results", ["result"], unique=False)

    op.create_table(
        "capas",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Open"),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('Open', 'In-Progress', 'Closed')", name="chk_capa_status"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "equipment",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("model", sa.String(length=255), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Available"),
        sa.Column("calibration_status", sa.String(length=20), nullable=False, server_default="Valid"),
        sa.Column("qa_approval_status", sa.String(length=20), nullable=False, server_default="Approved"),
        sa.Column("last_calibrated_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_cleaned_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_maintenance_due", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('Available', 'In Use', 'Maintenance', 'Faulted')",
            name="chk_equipment_status",
        ),
        sa.CheckConstraint(
            "calibration_status IN ('Valid', 'Due Soon', 'Due', 'Overdue', 'Expired')",
            name="chk_equipment_calibration",
        ),
        sa.CheckConstraint("qa_approval_status IN ('Approved', 'Rejected', 'Hold')", name="chk_equipment_qa"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "deviations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deviation_no", sa.String(length=100), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Open"),
        sa.Column("raised_by", sa.Uuid(), nullable=True),
        sa.Column("raised_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("linked_entity_type", sa.String(length=30), nullable=True),
        sa.Column("linked_batch_id", sa.Uuid(), nullable=True),
        sa.Column("linked_sample_id", sa.Uuid(), nullable=True),
        sa.Column("linked_test_result_id", sa.Uuid(), nullable=True),
        sa.Column("linked_process_step_id", sa.Uuid(), nullable=True),
        sa.Column("linked_batch_component_id", sa.Uuid(), nullable=True),
        sa.Column("linked_equipment_id", sa.String(length=64), nullable=True),
        sa.Column("resolution_action_taken", sa.Text(), nullable=True),
        sa.Column("resolution_closed_by", sa.Uuid(), nullable=True),
        sa.Column("resolution_closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_capa_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("severity IN ('Minor', 'Major', 'Critical')", name="chk_deviation_severity"),
        sa.CheckConstraint("status IN ('Open', 'In-Progress', 'Closed')", name="chk_deviation_status"),
        sa.CheckConstraint(
            "linked_entity_type IS NULL OR linked_entity_type IN "
            "('Batch', 'Sample', 'TestResult', 'ProcessStep', 'Equipment', 'BatchComponent')",
            name="chk_deviation_linked_entity_type",
        ),
        sa.CheckConstraint(
            "status = 'Closed' OR resolution_closed_at IS NULL",
            name="chk_deviation_resolution_on_close",
        ),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["raised_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["linked_batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["linked_sample_id"], ["samples.id"]),
        sa.ForeignKeyConstraint(["linked_test_result_id"], ["test_results.id"]),
        sa.ForeignKeyConstraint(["linked_process_step_id"], ["process_steps.id"]),
        sa.ForeignKeyConstraint(["linked_batch_component_id"], ["batch_components.id"]),
        sa.ForeignKeyConstraint(["linked_equipment_id"], ["equipment.id"]),
        sa.ForeignKeyConstraint(["resolution_closed_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["resolution_capa_id"], ["capas.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deviations_deviation_no", "deviations", ["deviation_no"], unique=True)
    op.create_index("ix_deviations_batch_id", "deviations", ["batch_id"], unique=False)
    op.create_index("ix_deviations_status", "deviations", ["status"], unique=False)
    op.create_index("ix_deviations_linked_batch_component_id", "deviations", ["linked_batch_component_id"], unique=False)
    op.create_index("ix_deviations_linked_equipment_id", "deviations", ["linked_equipment_id"], unique=False)
    op.create_index("idx_deviation_batch_status", "deviations", ["batch_id", "status"], unique=False)

    op.create_table(
        "equipment_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("equipment_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("related_batch_id", sa.Uuid(), nullable=True),
        sa.Column("related_process_step_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recorded_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint(
            "event_type IN ('Usage', 'Calibration', 'Cleaning', 'Maintenance', 'Validation', 'Fault', 'Inspection')",
            name="chk_equipment_event_type",
        ),
        sa.ForeignKeyConstraint(["equipment_id"], ["equipment.id"]),
        sa.ForeignKeyConstraint(["related_batch_id"], ["batches.id"]),
        sa.ForeignKeyConstraint(["related_process_step_id"], ["process_steps.id"]),
        sa.ForeignKeyConstraint(["recorded_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_equipment_events_equipment_id", "equipment_events", ["equipment_id"], unique=False)
    op.create_index("ix_equipment_events_related_batch_id", "equipment_events", ["related_batch_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("level", sa.String(length=10), nullable=False, server_default="info"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=True),
        sa.Column("outcome", sa.String(length=80), nullable=True),
        sa.Column("method", sa.String(length=10), nullable=True),
        sa.Column("url", sa.String(length=500), nullable=True),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("user_email", sa.String(length=255), nullable=True),
        sa.Column("user_role", sa.String(length=50), nullable=True),
        sa.Column("entity_type", sa.String(length=50), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("level IN ('info', 'warn', 'error')", name="chk_audit_log_level"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    for table in (
        "audit_logs",
        "equipment_events",
        "deviations",
        "equipment",
        "capas",
        "test_results",
        "samples",
        "batch_components",
        "process_steps",
        "batches",
        "project_assignments",
        "projects",
        "customers",
        "users",
        "role_permissions",
        "roles",
    ):
        op.drop_table(table)
