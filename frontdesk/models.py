"""Appointment record, workflow enums and the status transition table."""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .errors import ValidationError

TIME_LABEL_PATTERN = re.compile(r"^(0[1-9]|1[0-2]):[0-5][0-9] (AM|PM)$")
TOKEN_PREFIX = "Token #"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    PENDING = "pending"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"


class AppointmentType(str, Enum):
    GENERAL = "general"
    SPECIALIZED = "specialized"


class AppointmentAction(str, Enum):
    EDIT = "edit"
    MARK_WAITING = "mark-waiting"
    START_CONSULTATION = "start-consultation"
    COMPLETE = "complete"
    CANCEL = "cancel"
    COLLECT_PAYMENT = "collect-payment"
    VIEW_RECEIPT = "view-receipt"


# Completion is listed as reachable but only the payment sub-flow may enter it.
APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.WAITING, AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.WAITING: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

EDITABLE_STATUSES = frozenset(
    {AppointmentStatus.SCHEDULED, AppointmentStatus.WAITING, AppointmentStatus.IN_PROGRESS}
)
EDITABLE_FIELDS = frozenset(
    {"date", "time", "doctor", "department", "duration", "fee", "contact_number"}
)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in APPOINTMENT_TRANSITIONS[current]


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def normalize_keys(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Accept camelCase JSON keys as well as snake_case attribute names."""

    return {snake_case(str(key)): value for key, value in payload.items()}


def coerce_date(value: object, label: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"{label} must be an ISO formatted date") from exc
    raise ValidationError(f"{label} is required")


def coerce_enum(enum_type: type, value: object, label: str) -> Any:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)  # type: ignore[attr-defined]
        raise ValidationError(f"{label} must be one of: {allowed}") from exc


def normalize_amount(value: object, label: str = "amount") -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required")
    try:
        normalized = Decimal(str(value).strip()).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"Invalid {label}: {value}") from exc
    if not normalized.is_finite() or normalized < 0:
        raise ValidationError(f"{label} must be a non-negative number")
    return normalized


def validate_time_label(value: object) -> str:
    label = str(value or "").strip()
    if not TIME_LABEL_PATTERN.match(label):
        raise ValidationError("time must be a zero-padded 'hh:mm AM/PM' label")
    return label


def _required_text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    return value.strip()


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_duration(value: object) -> int:
    try:
        duration = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError("duration must be a whole number of minutes") from exc
    if duration <= 0:
        raise ValidationError("duration must be positive")
    return duration


@dataclass(frozen=True)
class Appointment:
    """A booked slot; replaced wholesale by the store on every change."""

    id: str
    patient_id: str
    patient_name: str
    date: date
    time: str
    doctor: str
    department: str
    duration: int = 30
    fee: Decimal = Decimal("0.00")
    appointment_type: AppointmentType = AppointmentType.GENERAL
    procedure_id: Optional[str] = None
    procedure_name: Optional[str] = None
    session_day: Optional[int] = None
    session_description: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    payment_amount: Optional[str] = None
    token: Optional[str] = None
    contact_number: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, appointment_id: Optional[str] = None) -> "Appointment":
        data = normalize_keys(payload)
        record_id = appointment_id or _optional_text(data.get("id"))
        if not record_id:
            raise ValidationError("id must be a non-empty string")

        appointment_type = coerce_enum(
            AppointmentType, data.get("appointment_type") or "general", "appointment_type"
        )
        procedure_id = _optional_text(data.get("procedure_id"))
        procedure_name = _optional_text(data.get("procedure_name"))
        if appointment_type is AppointmentType.SPECIALIZED and not (procedure_id and procedure_name):
            raise ValidationError("specialized appointments require procedure_id and procedure_name")

        session_day = data.get("session_day")
        if session_day is not None:
            try:
                session_day = int(session_day)
            except (TypeError, ValueError) as exc:
                raise ValidationError("session_day must be a whole number") from exc

        payment_method = data.get("payment_method")
        return cls(
            id=record_id,
            patient_id=_required_text(data, "patient_id"),
            patient_name=_required_text(data, "patient_name"),
            date=coerce_date(data.get("date")),
            time=validate_time_label(data.get("time")),
            doctor=_required_text(data, "doctor"),
            department=_required_text(data, "department"),
            duration=_coerce_duration(data.get("duration", 30)),
            fee=normalize_amount(data.get("fee", "0"), "fee"),
            appointment_type=appointment_type,
            procedure_id=procedure_id,
            procedure_name=procedure_name,
            session_day=session_day,
            session_description=_optional_text(data.get("session_description")),
            status=coerce_enum(AppointmentStatus, data.get("status") or "scheduled", "status"),
            payment_status=coerce_enum(
                PaymentStatus, data.get("payment_status") or "pending", "payment_status"
            ),
            payment_method=(
                coerce_enum(PaymentMethod, payment_method, "payment_method") if payment_method else None
            ),
            payment_amount=_optional_text(data.get("payment_amount")),
            token=_optional_text(data.get("token")),
            contact_number=_optional_text(data.get("contact_number")),
        )

    def with_changes(self, changes: Mapping[str, Any]) -> "Appointment":
        """Return a copy with the editable fields in ``changes`` applied and validated."""

        data = normalize_keys(changes)
        unknown = sorted(set(data) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")

        updates: Dict[str, Any] = {}
        if "date" in data:
            updates["date"] = coerce_date(data["date"])
        if "time" in data:
            updates["time"] = validate_time_label(data["time"])
        for key in ("doctor", "department"):
            if key in data:
                updates[key] = _required_text(data, key)
        if "duration" in data:
            updates["duration"] = _coerce_duration(data["duration"])
        if "fee" in data:
            updates["fee"] = normalize_amount(data["fee"], "fee")
        if "contact_number" in data:
            updates["contact_number"] = _optional_text(data["contact_number"])
        return replace(self, **updates)

    def is_future(self, as_of: date) -> bool:
        return self.date > as_of

    @property
    def is_terminal(self) -> bool:
        return not APPOINTMENT_TRANSITIONS[self.status]

    @property
    def token_number(self) -> Optional[int]:
        if not self.token or not self.token.startswith(TOKEN_PREFIX):
            return None
        try:
            return int(self.token[len(TOKEN_PREFIX):])
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "date": self.date.isoformat(),
            "time": self.time,
            "doctor": self.doctor,
            "department": self.department,
            "duration": self.duration,
            "fee": f"{self.fee:.2f}",
            "appointmentType": self.appointment_type.value,
            "procedureId": self.procedure_id,
            "procedureName": self.procedure_name,
            "sessionDay": self.session_day,
            "sessionDescription": self.session_description,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "paymentMethod": self.payment_method.value if self.payment_method else None,
            "paymentAmount": self.payment_amount,
            "token": self.token,
            "contactNumber": self.contact_number,
        }


__all__ = [
    "APPOINTMENT_TRANSITIONS",
    "Appointment",
    "AppointmentAction",
    "AppointmentStatus",
    "AppointmentType",
    "EDITABLE_FIELDS",
    "EDITABLE_STATUSES",
    "PaymentMethod",
    "PaymentStatus",
    "camel_case",
    "can_transition",
    "coerce_date",
    "coerce_enum",
    "normalize_amount",
    "normalize_keys",
    "snake_case",
    "validate_time_label",
]
