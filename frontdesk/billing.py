"""Receipts, daily collection totals and the daily billing CSV export."""
from __future__ import annotations

import csv
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import InvalidTransitionError, ValidationError
from .models import Appointment, AppointmentStatus, PaymentStatus, normalize_amount

logger = logging.getLogger(__name__)

DEFAULT_REPORT_DIR = Path(os.getenv("FRONTDESK_REPORT_DIR", "reports"))

REPORT_FIELDS = [
    "exported_at",
    "appointment_id",
    "token",
    "patient_name",
    "doctor",
    "department",
    "fee",
    "payment_status",
    "payment_method",
    "amount_paid",
]


@dataclass(frozen=True)
class Receipt:
    appointment_id: str
    patient_name: str
    doctor: str
    department: str
    visit_date: date
    visit_time: str
    token: Optional[str]
    fee: Decimal
    amount_paid: Decimal
    payment_method: str
    procedure_name: Optional[str] = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        return {
            "appointmentId": self.appointment_id,
            "patientName": self.patient_name,
            "doctor": self.doctor,
            "department": self.department,
            "date": self.visit_date.isoformat(),
            "time": self.visit_time,
            "token": self.token,
            "procedureName": self.procedure_name,
            "fee": f"{self.fee:.2f}",
            "amountPaid": f"{self.amount_paid:.2f}",
            "paymentMethod": self.payment_method,
            "issuedAt": self.issued_at.isoformat(),
        }


@dataclass(frozen=True)
class DailySummary:
    """Collection totals for one calendar day."""

    target_date: date
    completed: int
    collected: Dict[str, Decimal]
    unpaid_count: int
    unpaid_fees: Decimal

    @property
    def total_collected(self) -> Decimal:
        return sum(self.collected.values(), Decimal("0.00"))

    def to_dict(self) -> Dict[str, object]:
        return {
            "date": self.target_date.isoformat(),
            "completed": self.completed,
            "collected": {method: f"{amount:.2f}" for method, amount in self.collected.items()},
            "totalCollected": f"{self.total_collected:.2f}",
            "unpaidCount": self.unpaid_count,
            "unpaidFees": f"{self.unpaid_fees:.2f}",
        }


def build_receipt(appointment: Appointment) -> Receipt:
    """Receipt for a completed, paid appointment."""

    if appointment.status is not AppointmentStatus.COMPLETED:
        raise InvalidTransitionError("Receipts are only available for completed appointments")
    if appointment.payment_status is not PaymentStatus.PAID or appointment.payment_method is None:
        raise InvalidTransitionError("No payment has been collected for this appointment")
    return Receipt(
        appointment_id=appointment.id,
        patient_name=appointment.patient_name,
        doctor=appointment.doctor,
        department=appointment.department,
        visit_date=appointment.date,
        visit_time=appointment.time,
        token=appointment.token,
        procedure_name=appointment.procedure_name,
        fee=appointment.fee,
        amount_paid=_amount_paid(appointment),
        payment_method=appointment.payment_method.value,
    )


def _amount_paid(appointment: Appointment) -> Decimal:
    if appointment.payment_status is not PaymentStatus.PAID or not appointment.payment_amount:
        return Decimal("0.00")
    try:
        return normalize_amount(appointment.payment_amount, "payment amount")
    except ValidationError:
        logger.warning(
            "Appointment %s has an unreadable payment amount %r",
            appointment.id,
            appointment.payment_amount,
        )
        return Decimal("0.00")


def completed_on(appointments: Iterable[Appointment], target_date: date) -> List[Appointment]:
    rows = [
        row
        for row in appointments
        if row.date == target_date and row.status is AppointmentStatus.COMPLETED
    ]
    return sorted(rows, key=lambda row: (row.time, row.id))


def summarize_day(appointments: Iterable[Appointment], target_date: Optional[date] = None) -> DailySummary:
    target_date = target_date or date.today()
    rows = completed_on(appointments, target_date)

    collected: Dict[str, Decimal] = {}
    unpaid_count = 0
    unpaid_fees = Decimal("0.00")
    for row in rows:
        if row.payment_status is PaymentStatus.PAID and row.payment_method is not None:
            method = row.payment_method.value
            collected[method] = collected.get(method, Decimal("0.00")) + _amount_paid(row)
        else:
            unpaid_count += 1
            unpaid_fees += row.fee

    summary = DailySummary(
        target_date=target_date,
        completed=len(rows),
        collected=collected,
        unpaid_count=unpaid_count,
        unpaid_fees=unpaid_fees,
    )
    logger.info(
        "Billing summary for %s: %d completed, %s collected, %d unpaid",
        target_date.isoformat(),
        summary.completed,
        f"{summary.total_collected:.2f}",
        unpaid_count,
    )
    return summary


def default_report_path(target_date: date) -> Path:
    return DEFAULT_REPORT_DIR / f"billing_{target_date.isoformat()}.csv"


def export_daily_report(
    appointments: Iterable[Appointment],
    target_date: Optional[date] = None,
    report_path: Optional[Path | str] = None,
) -> Path:
    """Append the day's completed appointments to a CSV report and return its path."""

    target_date = target_date or date.today()
    report_path = Path(report_path) if report_path else default_report_path(target_date)
    report_dir = report_path.parent
    if report_dir and not report_dir.exists():
        report_dir.mkdir(parents=True, exist_ok=True)

    rows = completed_on(appointments, target_date)
    exported_at = datetime.now(timezone.utc).isoformat()
    file_exists = report_path.exists()

    with report_path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=REPORT_FIELDS)
        if not file_exists:
            writer.writeheader()
        for row in rows:
            writer.writerow(
                {
                    "exported_at": exported_at,
                    "appointment_id": row.id,
                    "token": row.token or "",
                    "patient_name": row.patient_name,
                    "doctor": row.doctor,
                    "department": row.department,
                    "fee": f"{row.fee:.2f}",
                    "payment_status": row.payment_status.value,
                    "payment_method": row.payment_method.value if row.payment_method else "",
                    "amount_paid": f"{_amount_paid(row):.2f}",
                }
            )

    logger.info("Exported %d billing rows for %s to %s", len(rows), target_date.isoformat(), report_path)
    return report_path


__all__ = [
    "DailySummary",
    "Receipt",
    "build_receipt",
    "export_daily_report",
    "summarize_day",
]
