"""Immutable consultation records.

A consultation is never edited in place: ``Consultation.apply_patch`` merges a
partial update into the record's JSON form and parses the result back, so the
same validation runs for patches, freshly loaded history and API payloads.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .errors import ValidationError
from .models import camel_case, coerce_date, coerce_enum, normalize_keys


class ConsultationStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationType(str, Enum):
    ROUTINE = "routine"
    FOLLOWUP = "followup"
    EMERGENCY = "emergency"


class FoodTiming(str, Enum):
    BEFORE_FOOD = "before-food"
    AFTER_FOOD = "after-food"
    ANY = "any"


class Urgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _text_list(value: object, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    if not isinstance(value, Sequence):
        raise ValidationError(f"{label} must be a list of strings")
    return tuple(_text(item) for item in value if _text(item))


def _parse_timestamp(value: object, label: str) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"{label} must be an ISO formatted timestamp") from exc
    else:
        raise ValidationError(f"{label} is required")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _format_timestamp(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_float(value: str) -> Optional[float]:
    cleaned = value.lower().replace("kg", "").replace("cm", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return None


@dataclass(frozen=True)
class Vitals:
    blood_pressure: str = ""
    pulse: str = ""
    temperature: str = ""
    respiratory_rate: str = ""
    spo2: str = ""
    weight: str = ""
    height: str = ""
    bmi: str = ""

    @classmethod
    def from_dict(cls, payload: object) -> "Vitals":
        if isinstance(payload, Vitals):
            return payload
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ValidationError("vitals must be an object")
        data = normalize_keys(payload)
        return cls(**{item.name: _text(data.get(item.name)) for item in fields(cls)})

    def with_derived_bmi(self) -> "Vitals":
        """Fill in BMI from weight (kg) and height (cm) when it was left blank."""

        if self.bmi:
            return self
        weight = _as_float(self.weight) if self.weight else None
        height = _as_float(self.height) if self.height else None
        if not weight or not height:
            return self
        metres = height / 100.0
        return replace(self, bmi=f"{weight / (metres * metres):.1f}")

    def to_dict(self) -> Dict[str, str]:
        return {camel_case(item.name): getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class PrescriptionItem:
    medicine: str
    dosage: str = ""
    frequency: str = ""
    duration: str = ""
    instructions: str = ""
    food_timing: FoodTiming = FoodTiming.ANY

    @classmethod
    def from_dict(cls, payload: object) -> "PrescriptionItem":
        if isinstance(payload, PrescriptionItem):
            return payload
        if not isinstance(payload, Mapping):
            raise ValidationError("prescription entries must be objects")
        data = normalize_keys(payload)
        medicine = _text(data.get("medicine"))
        if not medicine:
            raise ValidationError("prescription entries require a medicine")
        return cls(
            medicine=medicine,
            dosage=_text(data.get("dosage")),
            frequency=_text(data.get("frequency")),
            duration=_text(data.get("duration")),
            instructions=_text(data.get("instructions")),
            food_timing=coerce_enum(FoodTiming, data.get("food_timing") or "any", "food_timing"),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "medicine": self.medicine,
            "dosage": self.dosage,
            "frequency": self.frequency,
            "duration": self.duration,
            "instructions": self.instructions,
            "foodTiming": self.food_timing.value,
        }


@dataclass(frozen=True)
class Prescriptions:
    allopathic: Tuple[PrescriptionItem, ...] = ()
    ayurvedic: Tuple[PrescriptionItem, ...] = ()

    @classmethod
    def from_dict(cls, payload: object) -> "Prescriptions":
        if isinstance(payload, Prescriptions):
            return payload
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ValidationError("prescriptions must be an object with allopathic/ayurvedic lists")
        return cls(
            allopathic=tuple(PrescriptionItem.from_dict(item) for item in payload.get("allopathic") or ()),
            ayurvedic=tuple(PrescriptionItem.from_dict(item) for item in payload.get("ayurvedic") or ()),
        )

    def __len__(self) -> int:
        return len(self.allopathic) + len(self.ayurvedic)

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            "allopathic": [item.to_dict() for item in self.allopathic],
            "ayurvedic": [item.to_dict() for item in self.ayurvedic],
        }


@dataclass(frozen=True)
class Investigation:
    name: str
    category: str = ""
    urgency: Urgency = Urgency.ROUTINE
    notes: str = ""

    @classmethod
    def from_dict(cls, payload: object) -> "Investigation":
        if isinstance(payload, Investigation):
            return payload
        if isinstance(payload, str):
            payload = {"name": payload}
        if not isinstance(payload, Mapping):
            raise ValidationError("investigations must be objects or names")
        name = _text(payload.get("name"))
        if not name:
            raise ValidationError("investigations require a name")
        return cls(
            name=name,
            category=_text(payload.get("category")),
            urgency=coerce_enum(Urgency, payload.get("urgency") or "routine", "urgency"),
            notes=_text(payload.get("notes")),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "category": self.category,
            "urgency": self.urgency.value,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class Consultation:
    id: str
    patient_id: str
    patient_name: str
    visit_date: date
    visit_time: str
    department: str = ""
    doctor_name: str = ""
    consultation_type: ConsultationType = ConsultationType.ROUTINE
    chief_complaint: str = ""
    history_of_present_illness: str = ""
    past_medical_history: str = ""
    family_history: str = ""
    social_history: str = ""
    allergies: Tuple[str, ...] = ()
    vitals: Vitals = field(default_factory=Vitals)
    system_review: Mapping[str, str] = field(default_factory=dict)
    clinical_findings: str = ""
    clinical_notes: str = ""
    provisional_diagnosis: Tuple[str, ...] = ()
    differential_diagnosis: Tuple[str, ...] = ()
    investigations_ordered: Tuple[Investigation, ...] = ()
    prescriptions: Prescriptions = field(default_factory=Prescriptions)
    advice: str = ""
    follow_up_instructions: str = ""
    next_visit_date: Optional[date] = None
    consultation_fee: str = ""
    previous_consultation_id: Optional[str] = None
    status: ConsultationStatus = ConsultationStatus.IN_PROGRESS
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Consultation":
        data = normalize_keys(payload)
        unknown = sorted(set(data) - CONSULTATION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown consultation fields: {', '.join(unknown)}")

        for key in ("id", "patient_id", "patient_name"):
            if not _text(data.get(key)):
                raise ValidationError(f"{key} must be a non-empty string")

        system_review = data.get("system_review") or {}
        if not isinstance(system_review, Mapping):
            raise ValidationError("system_review must be an object")

        next_visit = data.get("next_visit_date")
        completed_at = data.get("completed_at")
        previous_id = _text(data.get("previous_consultation_id"))
        return cls(
            id=_text(data["id"]),
            patient_id=_text(data["patient_id"]),
            patient_name=_text(data["patient_name"]),
            visit_date=coerce_date(data.get("visit_date"), "visit_date"),
            visit_time=_text(data.get("visit_time")),
            department=_text(data.get("department")),
            doctor_name=_text(data.get("doctor_name")),
            consultation_type=coerce_enum(
                ConsultationType, data.get("consultation_type") or "routine", "consultation_type"
            ),
            chief_complaint=_text(data.get("chief_complaint")),
            history_of_present_illness=_text(data.get("history_of_present_illness")),
            past_medical_history=_text(data.get("past_medical_history")),
            family_history=_text(data.get("family_history")),
            social_history=_text(data.get("social_history")),
            allergies=_text_list(data.get("allergies"), "allergies"),
            vitals=Vitals.from_dict(data.get("vitals")).with_derived_bmi(),
            system_review={str(key): _text(value) for key, value in system_review.items()},
            clinical_findings=_text(data.get("clinical_findings")),
            clinical_notes=_text(data.get("clinical_notes")),
            provisional_diagnosis=_text_list(data.get("provisional_diagnosis"), "provisional_diagnosis"),
            differential_diagnosis=_text_list(data.get("differential_diagnosis"), "differential_diagnosis"),
            investigations_ordered=tuple(
                Investigation.from_dict(item) for item in data.get("investigations_ordered") or ()
            ),
            prescriptions=Prescriptions.from_dict(data.get("prescriptions")),
            advice=_text(data.get("advice")),
            follow_up_instructions=_text(data.get("follow_up_instructions")),
            next_visit_date=coerce_date(next_visit, "next_visit_date") if next_visit else None,
            consultation_fee=_text(data.get("consultation_fee")),
            previous_consultation_id=previous_id or None,
            status=coerce_enum(ConsultationStatus, data.get("status") or "in-progress", "status"),
            created_at=_parse_timestamp(data.get("created_at"), "created_at"),
            updated_at=_parse_timestamp(data.get("updated_at"), "updated_at"),
            completed_at=_parse_timestamp(completed_at, "completed_at") if completed_at else None,
        )

    def apply_patch(self, patch: Mapping[str, Any], *, now: Optional[datetime] = None) -> "Consultation":
        """Shallow-merge ``patch`` and return the new record; ``self`` is untouched."""

        changes = normalize_keys(patch)
        blocked = sorted(set(changes) & PROTECTED_FIELDS)
        if blocked:
            raise ValidationError(f"Fields cannot be changed directly: {', '.join(blocked)}")
        unknown = sorted(set(changes) - CONSULTATION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown consultation fields: {', '.join(unknown)}")

        merged = self.to_dict()
        for key, value in changes.items():
            merged[camel_case(key)] = _jsonable(value)
        merged["updatedAt"] = _format_timestamp(now or utc_now())
        return Consultation.from_dict(merged)

    def has_clinical_content(self) -> bool:
        return bool(
            self.chief_complaint
            or self.clinical_notes
            or self.provisional_diagnosis
            or self.differential_diagnosis
        )

    @property
    def diagnoses(self) -> Tuple[str, ...]:
        return self.provisional_diagnosis + self.differential_diagnosis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "visitDate": self.visit_date.isoformat(),
            "visitTime": self.visit_time,
            "department": self.department,
            "doctorName": self.doctor_name,
            "consultationType": self.consultation_type.value,
            "chiefComplaint": self.chief_complaint,
            "historyOfPresentIllness": self.history_of_present_illness,
            "pastMedicalHistory": self.past_medical_history,
            "familyHistory": self.family_history,
            "socialHistory": self.social_history,
            "allergies": list(self.allergies),
            "vitals": self.vitals.to_dict(),
            "systemReview": dict(self.system_review),
            "clinicalFindings": self.clinical_findings,
            "clinicalNotes": self.clinical_notes,
            "provisionalDiagnosis": list(self.provisional_diagnosis),
            "differentialDiagnosis": list(self.differential_diagnosis),
            "investigationsOrdered": [item.to_dict() for item in self.investigations_ordered],
            "prescriptions": self.prescriptions.to_dict(),
            "advice": self.advice,
            "followUpInstructions": self.follow_up_instructions,
            "nextVisitDate": self.next_visit_date.isoformat() if self.next_visit_date else None,
            "consultationFee": self.consultation_fee,
            "previousConsultationId": self.previous_consultation_id,
            "status": self.status.value,
            "createdAt": _format_timestamp(self.created_at),
            "updatedAt": _format_timestamp(self.updated_at),
            "completedAt": _format_timestamp(self.completed_at),
        }


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_jsonable(item) for item in value]
    return value


CONSULTATION_FIELDS: FrozenSet[str] = frozenset(item.name for item in fields(Consultation))
PROTECTED_FIELDS: FrozenSet[str] = frozenset(
    {"id", "patient_id", "status", "created_at", "updated_at", "completed_at"}
)


__all__ = [
    "CONSULTATION_FIELDS",
    "Consultation",
    "ConsultationStatus",
    "ConsultationType",
    "FoodTiming",
    "Investigation",
    "PROTECTED_FIELDS",
    "PrescriptionItem",
    "Prescriptions",
    "Urgency",
    "Vitals",
    "utc_now",
]
