"""Seed database with the built-in roles and a demo dataset."""
from datetime import date, datetime, timedelta, timezone
import uuid

from cdmo_records.auth import get_password_hash
from cdmo_records.database import Database
from cdmo_records.models import (
    CAPA, Batch, BatchComponent, Customer, Deviation, Equipment, EquipmentEvent,
    ProcessStep, Project, ProjectAssignment, Role, Sample, TestResult, User,
)
from cdmo_records.use_cases.admin_accounts import seed_default_roles


def seed():
    """Seed database with demo data."""
    database = Database.from_settings()
    database.create_all()
    db = database.session()

    try:
        seed_default_roles(db)
        if db.query(Customer).first():
            print("Demo data already present, only roles were checked.")
            return

        roles = {role.name: role for role in db.query(Role).all()}
        now = datetime.now(timezone.utc)

        # Users
        users_data = [
            {'username': 'admin', 'email': 'admin@cdmo.local', 'password': 'admin12345', 'role': 'Admin',
             'department': 'IT'},
            {'username': 'supervisor', 'email': 'supervisor@cdmo.local', 'password': 'supervisor123',
             'role': 'Supervisor', 'department': 'Production'},
            {'username': 'qa', 'email': 'qa@cdmo.local', 'password': 'qa12345678', 'role': 'QA',
             'department': 'Quality'},
            {'username': 'analyst', 'email': 'analyst@cdmo.local', 'password': 'analyst123', 'role': 'Analyst',
             'department': 'QC Lab'},
            {'username': 'operator', 'email': 'operator@cdmo.local', 'password': 'operator123',
             'role': 'Operator', 'department': 'Production'},
        ]
        users = {}
        for user_data in users_data:
            password = user_data.pop('password')
            role = roles[user_data.pop('role')]
            user = User(password_hash=get_password_hash(password), role_id=role.id, **user_data)
            db.add(user)
            users[user.username] = user
        db.flush()

        # Customer, project
        acme = Customer(name="Acme Pharma", country="USA", contact_person="Jane Roe", email="qa@acme.example")
        db.add(acme)
        db.flush()
        project = Project(
            project_code="ACME-001",
            project_name="Acme Oncology API",
            customer_id=acme.id,
            status="Ongoing",
            start_date=date.today() - timedelta(days=90),
        )
        db.add(project)
        db.flush()
        for username, assigned_role in (("operator", "Project Manager"), ("analyst", "Lab Authority")):
            db.add(ProjectAssignment(user_id=users[username].id, project_id=project.id, assigned_role=assigned_role))

        # Equipment
        reactor = Equipment(
            id="EQ-REACTOR-01", name="Glass-lined reactor 500L", model="GLR-500", location="Suite A",
            status="In Use", calibration_status="Valid", last_calibrated_on=now - timedelta(days=30),
            next_maintenance_due=now + timedelta(days=60),
        )
        dryer = Equipment(
            id="EQ-DRYER-01", name="Vacuum tray dryer", model="VTD-12", location="Suite B",
            status="Available", calibration_status="Due Soon", last_calibrated_on=now - timedelta(days=170),
            next_maintenance_due=now - timedelta(days=2),
        )
        db.add_all([reactor, dryer])
        db.flush()

        # Batches: an intermediate that feeds the API batch
        intermediate = Batch(
            api_batch_id="ACME-INT-0001", customer_id=acme.id, project_id=project.id,
            product_name="Acmetinib intermediate", plant_location="Plant 1", batch_size=120,
            batch_size_unit="kg", datasource="MES", status="Completed",
        )
        api_batch = Batch(
            api_batch_id="ACME-API-0001", customer_id=acme.id, project_id=project.id,
            product_name="Acmetinib API", plant_location="Plant 1", batch_size=80, batch_size_unit="kg",
            target_yield=75, datasource="MES", status="In-Process", targeted_end_date=now + timedelta(days=14),
        )
        db.add_all([intermediate, api_batch])
        db.flush()

        snapshot = [{
            'equipment': reactor.id, 'equipment_status': 'In Use', 'calibration_status': 'Valid',
            'qa_approval_status': 'Approved',
        }]
        steps = [
            ProcessStep(batch_id=api_batch.id, step_name="Charging", step_sequence=1,
                        start_timestamp=now - timedelta(days=3), end_timestamp=now - timedelta(days=3, hours=-4),
                        equipment_snapshot=snapshot),
            ProcessStep(batch_id=api_batch.id, step_name="Reaction", step_sequence=2,
                        start_timestamp=now - timedelta(days=2), equipment_snapshot=snapshot),
            ProcessStep(batch_id=api_batch.id, step_name="Drying", step_sequence=3),
        ]
        db.add_all(steps)
        db.flush()

        component = BatchComponent(
            batch_id=api_batch.id, process_step_id=steps[0].id, component_batch_id=intermediate.api_batch_id,
            source_batch_id=intermediate.id, component_type="Intermediate", component_name="Acmetinib intermediate",
            material_code="INT-7781", internal_lot_id="LOT-INT-0001", quantity_used=60, uom="kg",
            usage_ts=now - timedelta(days=3), coa_received=True, qc_status="Approved",
        )
        solvent = BatchComponent(
            batch_id=api_batch.id, process_step_id=steps[1].id, component_type="Raw Material",
            component_name="Ethanol", material_code="RM-ETOH", supplier_name="SolvCo",
            supplier_lot_id="SC-2291", quantity_used=200, uom="L", coa_received=True, qc_status="Approved",
        )
        db.add_all([component, solvent])
        db.flush()

        sample = Sample(
            sample_id="S-ACME-API-0001-01", batch_id=api_batch.id, batch_component_id=component.id,
            sample_type="In-Process", collected_at=now - timedelta(days=2), collected_by=users['analyst'].id,
            storage_location="Fridge 2",
        )
        db.add(sample)
        db.flush()
        db.add_all([
            TestResult(test_id="T-0001", sample_record_id=sample.id, method_id="HPLC-12", parameter="Assay",
                       value=99.1, unit="%", result="Pass", specification="98.0-102.0",
                       tested_at=now - timedelta(days=1), tested_by=users['analyst'].id,
                       equipment_used=["HPLC-03"], reagents=[]),
            TestResult(test_id="T-0002", sample_record_id=sample.id, method_id="KF-01", parameter="Water content",
                       unit="%", result="Pending", specification="NMT 0.5"),
        ])

        capa = CAPA(title="Requalify dryer vacuum pump", status="Open", owner_id=users['qa'].id)
        db.add(capa)
        db.flush()
        db.add(Deviation(
            deviation_no="DEV-2026-001", batch_id=api_batch.id, title="Reactor temperature excursion",
            severity="Major", status="Open", raised_by=users['operator'].id, raised_at=now - timedelta(days=2),
            linked_entity_type="ProcessStep", linked_process_step_id=steps[1].id,
        ))

        db.add_all([
            EquipmentEvent(equipment_id=reactor.id, event_type="Usage", timestamp=now - timedelta(days=3),
                           related_batch_id=api_batch.id, related_process_step_id=steps[0].id,
                           recorded_by=users['operator'].id),
            EquipmentEvent(equipment_id=reactor.id, event_type="Usage", timestamp=now - timedelta(days=2),
                           related_batch_id=api_batch.id, related_process_step_id=steps[1].id,
                           recorded_by=users['operator'].id),
            EquipmentEvent(equipment_id=dryer.id, event_type="Cleaning", timestamp=now - timedelta(days=1),
                           related_batch_id=api_batch.id, recorded_by=users['operator'].id),
        ])

        db.commit()
        print("✅ Database seeded successfully!")
        print("\nDemo users:")
        for user_data in users_data:
            print(f"  - {user_data['username']} ({user_data['email']})")

    except Exception as e:
        print(f"❌ Error seeding database: {e}")
        db.rollback()
        raise
    finally:
        db.close()
        database.dispose()


if __name__ == "__main__":
    seed()
