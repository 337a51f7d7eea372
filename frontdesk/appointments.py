"""Appointment store providing booking, status workflow and payment collection."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from connector import AppointmentTable

from .errors import (
    InvalidTransitionError,
    NotFoundError,
    OperationResult,
    PaymentRequiredError,
    ValidationError,
    returns_result,
)
from .listing import AppointmentFilters, SortState, filter_and_sort
from .models import (
    EDITABLE_STATUSES,
    TOKEN_PREFIX,
    Appointment,
    AppointmentAction,
    AppointmentStatus,
    PaymentMethod,
    PaymentStatus,
    can_transition,
    coerce_enum,
    normalize_amount,
    normalize_keys,
)

logger = logging.getLogger(__name__)

# Workflow fields are owned by the store and never taken from a booking request.
_BOOKING_IGNORED = ("id", "status", "payment_status", "payment_method", "payment_amount", "token")

_STATUS_ACTIONS: Dict[AppointmentStatus, List[AppointmentAction]] = {
    AppointmentStatus.SCHEDULED: [
        AppointmentAction.EDIT,
        AppointmentAction.MARK_WAITING,
        AppointmentAction.CANCEL,
    ],
    AppointmentStatus.WAITING: [
        AppointmentAction.EDIT,
        AppointmentAction.START_CONSULTATION,
        AppointmentAction.CANCEL,
    ],
    AppointmentStatus.IN_PROGRESS: [
        AppointmentAction.EDIT,
        AppointmentAction.COMPLETE,
        AppointmentAction.CANCEL,
    ],
    AppointmentStatus.CANCELLED: [],
}


def _validate_identifier(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must be a non-empty string")
    return value.strip()


def available_actions(appointment: Appointment, as_of: Optional[date] = None) -> List[AppointmentAction]:
    """Actions offered for a row; future-dated rows are read-only."""

    as_of = as_of or date.today()
    if appointment.is_future(as_of):
        return []
    if appointment.status is AppointmentStatus.COMPLETED:
        if appointment.payment_status is PaymentStatus.PAID:
            return [AppointmentAction.VIEW_RECEIPT]
        return [AppointmentAction.COLLECT_PAYMENT]
    return list(_STATUS_ACTIONS[appointment.status])


class AppointmentStore:
    """Single writer for the appointment list."""

    def __init__(self, table: Optional[AppointmentTable] = None) -> None:
        self._table = table if table is not None else AppointmentTable()

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._table.get(appointment_id)

    def all(self) -> List[Appointment]:
        return self._table.all()

    def list_appointments(
        self,
        filters: Optional[AppointmentFilters] = None,
        sort: Optional[SortState] = None,
        *,
        as_of: Optional[date] = None,
    ) -> List[Appointment]:
        return filter_and_sort(self._table.all(), filters, sort, as_of=as_of)

    def patient_schedule(self, patient_id: str) -> List[Appointment]:
        """Retrieve the patient's appointments in calendar order."""

        rows = [row for row in self._table.all() if row.patient_id == patient_id]
        return sorted(rows, key=lambda row: (row.date, row.time))

    def session_series(self, procedure_id: str, patient_id: str) -> List[Appointment]:
        """All session rows of one multi-day procedure, ordered by session day."""

        rows = [
            row
            for row in self._table.all()
            if row.procedure_id == procedure_id and row.patient_id == patient_id
        ]
        return sorted(rows, key=lambda row: (row.session_day or 0, row.date, row.time))

    def available_actions(self, appointment_id: str, *, as_of: Optional[date] = None) -> List[AppointmentAction]:
        appointment = self._table.get(appointment_id)
        if appointment is None:
            return []
        return available_actions(appointment, as_of)

    def restore(self, appointments: Iterable[Appointment]) -> int:
        """Insert already-built rows unchanged (demo data, imports); returns the count."""

        count = 0
        for appointment in appointments:
            self._table.insert(appointment)
            count += 1
        logger.info("Restored %d appointments", count)
        return count

    @returns_result
    def create(self, draft: Mapping[str, Any], *, as_of: Optional[date] = None) -> Appointment:
        """Book an appointment; only same-day or past bookings receive a token."""

        as_of = as_of or date.today()
        data = {key: value for key, value in normalize_keys(draft).items() if key not in _BOOKING_IGNORED}
        appointment = Appointment.from_dict(data, appointment_id="new")
        token = None if appointment.is_future(as_of) else self._next_token(appointment.date)
        appointment = replace(appointment, id=self._table.next_id(), token=token)
        self._table.insert(appointment)
        logger.info(
            "Booked appointment %s for patient %s on %s %s (token=%s)",
            appointment.id,
            appointment.patient_id,
            appointment.date.isoformat(),
            appointment.time,
            appointment.token or "none",
        )
        return appointment

    @returns_result
    def transition_status(self, appointment_id: str, new_status: Any) -> Appointment:
        appointment = self._require(appointment_id)
        target = coerce_enum(AppointmentStatus, new_status, "status")
        if target is appointment.status:
            raise InvalidTransitionError(f"Appointment is already {target.value}")
        if not can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot move appointment from {appointment.status.value} to {target.value}"
            )
        if target is AppointmentStatus.COMPLETED:
            raise PaymentRequiredError(
                "Completing an appointment requires resolving payment first"
            )
        updated = self._commit(replace(appointment, status=target))
        logger.info(
            "Appointment %s moved from %s to %s",
            appointment.id,
            appointment.status.value,
            target.value,
        )
        return updated

    def cancel(self, appointment_id: str) -> OperationResult[Appointment]:
        """Cancel a non-terminal appointment; the row is kept."""

        return self.transition_status(appointment_id, AppointmentStatus.CANCELLED)

    @returns_result
    def update_fields(self, appointment_id: str, changes: Mapping[str, Any]) -> Appointment:
        appointment = self._require(appointment_id)
        if appointment.status not in EDITABLE_STATUSES:
            raise InvalidTransitionError(
                f"Appointment not editable: status is {appointment.status.value}"
            )
        updated = self._commit(appointment.with_changes(changes))
        logger.info("Appointment %s updated: %s", appointment.id, ", ".join(sorted(changes)))
        return updated

    @returns_result
    def record_payment(
        self,
        appointment_id: str,
        paid: bool,
        method: Optional[Any] = None,
        amount: Optional[Any] = None,
    ) -> Appointment:
        """Resolve payment, completing the appointment when it is still open.

        ``paid=False`` is the explicit "pay later" choice: the appointment is
        completed with ``paymentStatus=unpaid`` and no method or amount.
        Already-completed rows only have their payment fields changed.
        """

        appointment = self._require(appointment_id)
        if appointment.status is AppointmentStatus.CANCELLED:
            raise InvalidTransitionError("Cancelled appointments have no payment to collect")
        if appointment.payment_status is PaymentStatus.PAID and appointment.status is AppointmentStatus.COMPLETED:
            raise InvalidTransitionError("Payment has already been collected")

        changes: Dict[str, Any]
        if paid:
            changes = {
                "payment_status": PaymentStatus.PAID,
                "payment_method": self._payment_method(method),
                "payment_amount": self._payment_amount(amount),
            }
        else:
            changes = {
                "payment_status": PaymentStatus.UNPAID,
                "payment_method": None,
                "payment_amount": None,
            }
        if appointment.status is not AppointmentStatus.COMPLETED:
            changes["status"] = AppointmentStatus.COMPLETED

        updated = self._commit(replace(appointment, **changes))
        logger.info(
            "Appointment %s payment recorded as %s (status %s)",
            appointment.id,
            updated.payment_status.value,
            updated.status.value,
        )
        return updated

    @returns_result
    def collect_payment(self, appointment_id: str, method: Any, amount: Any) -> Appointment:
        """Collect an outstanding payment for a completed appointment."""

        appointment = self._require(appointment_id)
        if appointment.status is not AppointmentStatus.COMPLETED:
            raise InvalidTransitionError("Only completed appointments have payments to collect")
        return self.record_payment(appointment_id, True, method, amount).unwrap()

    @returns_result
    def issue_token(self, appointment_id: str, *, as_of: Optional[date] = None) -> Appointment:
        as_of = as_of or date.today()
        appointment = self._require(appointment_id)
        if appointment.token:
            raise InvalidTransitionError(f"Appointment already holds {appointment.token}")
        if appointment.status is AppointmentStatus.CANCELLED:
            raise InvalidTransitionError("Cancelled appointments cannot receive a token")
        if appointment.is_future(as_of):
            raise InvalidTransitionError("Tokens are issued on the day of the appointment")
        updated = self._commit(replace(appointment, token=self._next_token(appointment.date)))
        logger.info("Issued %s for appointment %s", updated.token, appointment.id)
        return updated

    def _require(self, appointment_id: str) -> Appointment:
        appointment_id = _validate_identifier(appointment_id, "appointment_id")
        appointment = self._table.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
        return appointment

    def _commit(self, appointment: Appointment) -> Appointment:
        if not self._table.replace(appointment):
            raise NotFoundError(f"Appointment '{appointment.id}' does not exist")
        return appointment

    def _next_token(self, on_date: date) -> str:
        numbers = [
            row.token_number
            for row in self._table.all()
            if row.date == on_date and row.token_number is not None
        ]
        return f"{TOKEN_PREFIX}{max(numbers, default=0) + 1}"

    @staticmethod
    def _payment_method(method: Optional[Any]) -> PaymentMethod:
        if method is None or (isinstance(method, str) and not method.strip()):
            raise ValidationError("payment method is required when paying now")
        return coerce_enum(PaymentMethod, method, "payment_method")

    @staticmethod
    def _payment_amount(amount: Optional[Any]) -> str:
        text = "" if amount is None else str(amount).strip()
        if normalize_amount(text, "payment amount") <= 0:
            raise ValidationError("payment amount must be greater than zero")
        return text


__all__ = ["AppointmentStore", "available_actions"]
