"""Demo rows for a freshly started front desk."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from .appointments import AppointmentStore
from .clinical import (
    Consultation,
    ConsultationStatus,
    FoodTiming,
    PrescriptionItem,
    Prescriptions,
    Vitals,
)
from .consultations import ConsultationRegistry
from .models import Appointment, AppointmentStatus, AppointmentType, PaymentMethod, PaymentStatus
from .templates import PrescriptionTemplate, PrescriptionTemplateStore

logger = logging.getLogger(__name__)

PHYSIO_PROCEDURE = ("ortho-physio-rehab", "Physiotherapy Rehabilitation")
STRESS_TEST_PROCEDURE = ("cardio-stress-test", "Cardiac Stress Test")


def demo_appointments(as_of: Optional[date] = None) -> List[Appointment]:
    today = as_of or date.today()
    rows = [
        Appointment(
            id="app-1",
            patient_id="pat-001",
            patient_name="John Doe",
            date=today,
            time="09:00 AM",
            doctor="Dr. Smith",
            department="General OPD",
            fee=Decimal("500.00"),
            status=AppointmentStatus.COMPLETED,
            payment_status=PaymentStatus.PAID,
            payment_method=PaymentMethod.CASH,
            payment_amount="500",
            token="Token #12",
            contact_number="+91 98765 43210",
        ),
        Appointment(
            id="app-2",
            patient_id="pat-002",
            patient_name="Jane Smith",
            date=today,
            time="10:30 AM",
            doctor="Dr. Johnson",
            department="Cardiology",
            fee=Decimal("800.00"),
            status=AppointmentStatus.IN_PROGRESS,
            token="Token #8",
        ),
        Appointment(
            id="app-3",
            patient_id="pat-003",
            patient_name="Robert Wilson",
            date=today,
            time="11:15 AM",
            doctor="Dr. Smith",
            department="General OPD",
            fee=Decimal("500.00"),
            status=AppointmentStatus.WAITING,
            token="Token #13",
        ),
        Appointment(
            id="app-sp-2",
            patient_id="pat-004",
            patient_name="Thomas Brown",
            date=today,
            time="08:30 AM",
            doctor="Dr. Martinez",
            department="Cardiology",
            duration=90,
            fee=Decimal("3500.00"),
            appointment_type=AppointmentType.SPECIALIZED,
            procedure_id=STRESS_TEST_PROCEDURE[0],
            procedure_name=STRESS_TEST_PROCEDURE[1],
            session_day=1,
            session_description="Treadmill stress test with ECG monitoring",
            status=AppointmentStatus.COMPLETED,
            payment_status=PaymentStatus.UNPAID,
            token="Token #5",
        ),
    ]
    for offset, session_day in enumerate((3, 5, 8), start=1):
        rows.append(
            Appointment(
                id=f"app-physio-{session_day}",
                patient_id="pat-005",
                patient_name="Sarah Johnson",
                date=today + timedelta(days=offset * 2),
                time="01:00 PM",
                doctor="Dr. Anderson",
                department="Orthopedics",
                duration=45,
                fee=Decimal("0.00"),
                appointment_type=AppointmentType.SPECIALIZED,
                procedure_id=PHYSIO_PROCEDURE[0],
                procedure_name=PHYSIO_PROCEDURE[1],
                session_day=session_day,
                session_description=f"Rehabilitation session {session_day}",
            )
        )
    return rows


def demo_consultations(as_of: Optional[date] = None) -> List[Consultation]:
    today = as_of or date.today()
    yesterday = today - timedelta(days=1)
    created = datetime.combine(yesterday, time(9, 30), tzinfo=timezone.utc)
    return [
        Consultation(
            id="cons-001",
            patient_id="pat-001",
            patient_name="John Doe",
            visit_date=yesterday,
            visit_time="09:30",
            department="General Medicine",
            doctor_name="Dr. Smith",
            chief_complaint="Fever and headache for 3 days",
            vitals=Vitals(blood_pressure="120/80", pulse="88", temperature="101.2"),
            clinical_notes="Likely viral illness. No neck stiffness.",
            provisional_diagnosis=("Viral Fever", "Headache"),
            prescriptions=Prescriptions(
                allopathic=(
                    PrescriptionItem(
                        medicine="Paracetamol 500mg",
                        dosage="1 tablet",
                        frequency="Three times daily",
                        duration="3 days",
                        food_timing=FoodTiming.AFTER_FOOD,
                    ),
                ),
            ),
            advice="Rest and plenty of fluids.",
            consultation_fee="500",
            status=ConsultationStatus.COMPLETED,
            created_at=created,
            updated_at=created + timedelta(minutes=20),
            completed_at=created + timedelta(minutes=20),
        ),
        Consultation(
            id="cons-002",
            patient_id="pat-002",
            patient_name="Jane Smith",
            visit_date=yesterday,
            visit_time="11:00",
            department="Cardiology",
            doctor_name="Dr. Johnson",
            chief_complaint="Hypertension follow-up",
            vitals=Vitals(blood_pressure="145/95", pulse="76"),
            provisional_diagnosis=("Essential Hypertension",),
            prescriptions=Prescriptions(
                allopathic=(
                    PrescriptionItem(
                        medicine="Amlodipine 5mg",
                        dosage="1 tablet",
                        frequency="Once daily",
                        duration="30 days",
                        food_timing=FoodTiming.BEFORE_FOOD,
                    ),
                ),
            ),
            follow_up_instructions="Review blood pressure log in one month.",
            consultation_fee="800",
            status=ConsultationStatus.COMPLETED,
            created_at=created + timedelta(hours=1, minutes=30),
            updated_at=created + timedelta(hours=2),
            completed_at=created + timedelta(hours=2),
        ),
    ]


def _medicine(medicine, dosage, frequency, duration, instructions="", *, before=False, after=False):
    return {
        "medicine": medicine,
        "dosage": dosage,
        "frequency": frequency,
        "duration": duration,
        "instructions": instructions,
        "beforeFood": before,
        "afterFood": after,
    }


# Stored in the layout older front-end builds wrote, food flags included.
_DEMO_TEMPLATES = [
    {
        "id": "template-001",
        "name": "Hypertension Management",
        "description": "Standard treatment for essential hypertension",
        "department": "Cardiology",
        "type": "allopathic",
        "allopathicMedicines": [
            _medicine("Amlodipine", "5mg", "Once daily", "30 days", "Take in the morning", before=True),
            _medicine("Metoprolol", "25mg", "Twice daily", "30 days", "Monitor heart rate", after=True),
        ],
        "ayurvedicMedicines": [],
        "createdAt": "2024-01-01T10:00:00Z",
        "createdBy": "Dr. Smith",
    },
    {
        "id": "template-002",
        "name": "Diabetes Type 2 - Initial",
        "description": "Initial management for newly diagnosed Type 2 diabetes",
        "department": "General Medicine",
        "type": "allopathic",
        "allopathicMedicines": [
            _medicine("Metformin", "500mg", "Twice daily", "30 days", "Take with meals", after=True),
        ],
        "ayurvedicMedicines": [],
        "createdAt": "2024-01-02T10:00:00Z",
        "createdBy": "Dr. Johnson",
    },
    {
        "id": "template-003",
        "name": "Vata Dosha Imbalance",
        "description": "Ayurvedic treatment for Vata imbalance",
        "department": "Ayurveda",
        "type": "ayurvedic",
        "allopathicMedicines": [],
        "ayurvedicMedicines": [
            _medicine("Dashamoola Kwath", "20ml", "Twice daily", "15 days", "Mix with warm water", before=True),
            _medicine("Ashwagandha Churna", "3g", "Twice daily", "30 days", "Take with warm milk", after=True),
        ],
        "createdAt": "2024-01-03T10:00:00Z",
        "createdBy": "Dr. Sharma",
    },
    {
        "id": "template-004",
        "name": "Upper Respiratory Infection",
        "description": "Combined treatment for URI",
        "department": "General Medicine",
        "type": "mixed",
        "allopathicMedicines": [
            _medicine("Paracetamol", "500mg", "Three times daily", "5 days", "For fever", after=True),
        ],
        "ayurvedicMedicines": [
            _medicine("Sitopaladi Churna", "3g", "Three times daily", "7 days", "Mix with honey"),
        ],
        "createdAt": "2024-01-04T10:00:00Z",
        "createdBy": "Dr. Patel",
    },
    {
        "id": "template-005",
        "name": "Arthritis Pain Management",
        "description": "Pain relief for arthritis",
        "department": "Orthopedics",
        "type": "allopathic",
        "allopathicMedicines": [
            _medicine("Diclofenac", "50mg", "Twice daily", "10 days", "Take after meals", after=True),
            _medicine("Pantoprazole", "40mg", "Once daily", "10 days", "Stomach protection", before=True),
        ],
        "ayurvedicMedicines": [],
        "createdAt": "2024-01-05T10:00:00Z",
        "createdBy": "Dr. Kumar",
    },
]


def demo_templates() -> List[PrescriptionTemplate]:
    return [PrescriptionTemplate.from_dict(raw) for raw in _DEMO_TEMPLATES]


def seed_appointments(store: AppointmentStore, as_of: Optional[date] = None) -> int:
    """Load demo appointments into an empty store; returns the number added."""

    if store.all():
        logger.info("Appointment store already holds data; skipping demo appointments")
        return 0
    return store.restore(demo_appointments(as_of))


def seed_consultations(registry: ConsultationRegistry, as_of: Optional[date] = None) -> int:
    """Persist demo consultations not already present in the history."""

    return registry.import_consultations(demo_consultations(as_of)).unwrap()


def seed_templates(store: PrescriptionTemplateStore) -> int:
    """Add the demo prescription templates to an empty template store."""

    if store.all_templates():
        logger.info("Template store already holds data; skipping demo templates")
        return 0
    return store.import_templates(demo_templates()).unwrap()


__all__ = [
    "demo_appointments",
    "demo_consultations",
    "demo_templates",
    "seed_appointments",
    "seed_consultations",
    "seed_templates",
]
