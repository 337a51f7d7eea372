"""Filtering and sorting for the appointment list view."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .models import Appointment, AppointmentStatus, PaymentStatus, coerce_date, coerce_enum

ALL = "all"


class DateFilter(str, Enum):
    ALL = "all"
    TODAY = "today"
    UPCOMING = "upcoming"


class PaymentFilter(str, Enum):
    ALL = "all"
    PAID = "paid"
    UNPAID = "unpaid"
    PENDING_PAYMENT = "pending-payment"


class SortField(str, Enum):
    DATE = "date"
    PATIENT = "patient"
    DOCTOR = "doctor"
    STATUS = "status"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class AppointmentFilters:
    search: str = ""
    status: str = ALL
    date_filter: DateFilter = DateFilter.ALL
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    department: str = ALL
    payment: PaymentFilter = PaymentFilter.ALL

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "AppointmentFilters":
        """Build filters from query-string style parameters."""

        status = (params.get("status") or ALL).strip().lower()
        if status != ALL:
            coerce_enum(AppointmentStatus, status, "status")
        date_from = params.get("from")
        date_to = params.get("to")
        return cls(
            search=(params.get("search") or "").strip(),
            status=status,
            date_filter=coerce_enum(DateFilter, params.get("date") or ALL, "date"),
            date_from=coerce_date(date_from, "from") if date_from else None,
            date_to=coerce_date(date_to, "to") if date_to else None,
            department=(params.get("department") or ALL).strip() or ALL,
            payment=coerce_enum(PaymentFilter, params.get("payment") or ALL, "payment"),
        )


@dataclass(frozen=True)
class SortState:
    field: SortField = SortField.DATE
    direction: SortDirection = SortDirection.ASC

    def toggle(self, field: SortField) -> "SortState":
        """Same field flips direction; a new field starts ascending."""

        if field is self.field:
            flipped = SortDirection.DESC if self.direction is SortDirection.ASC else SortDirection.ASC
            return replace(self, direction=flipped)
        return SortState(field=field, direction=SortDirection.ASC)

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "SortState":
        return cls(
            field=coerce_enum(SortField, params.get("sort") or "date", "sort"),
            direction=coerce_enum(SortDirection, params.get("direction") or "asc", "direction"),
        )


def _matches_search(appointment: Appointment, needle: str) -> bool:
    needle = needle.lower()
    haystacks = (appointment.patient_name, appointment.token or "", appointment.doctor)
    return any(needle in value.lower() for value in haystacks)


def _matches_date(appointment: Appointment, filters: AppointmentFilters, as_of: date) -> bool:
    if filters.date_filter is DateFilter.TODAY:
        return appointment.date == as_of
    if filters.date_filter is DateFilter.UPCOMING:
        if filters.date_from or filters.date_to:
            if filters.date_from and appointment.date < filters.date_from:
                return False
            if filters.date_to and appointment.date > filters.date_to:
                return False
            return True
        return appointment.date >= as_of
    return True


def _matches_payment(appointment: Appointment, payment: PaymentFilter) -> bool:
    if payment is PaymentFilter.PAID:
        return appointment.payment_status is PaymentStatus.PAID
    if payment is PaymentFilter.UNPAID:
        return appointment.payment_status is PaymentStatus.UNPAID
    if payment is PaymentFilter.PENDING_PAYMENT:
        return (
            appointment.status is AppointmentStatus.COMPLETED
            and appointment.payment_status is not PaymentStatus.PAID
        )
    return True


def matches(appointment: Appointment, filters: AppointmentFilters, as_of: date) -> bool:
    """Return True when the row satisfies every active filter."""

    if filters.search and not _matches_search(appointment, filters.search):
        return False
    if filters.status != ALL and appointment.status.value != filters.status:
        return False
    if not _matches_date(appointment, filters, as_of):
        return False
    if filters.department != ALL and appointment.department != filters.department:
        return False
    return _matches_payment(appointment, filters.payment)


# Date ordering compares the "hh:mm AM/PM" labels as text. That only holds for
# zero-padded labels within one half of the day; booking enforces the padding.
_SORT_KEYS: Dict[SortField, Callable[[Appointment], object]] = {
    SortField.DATE: lambda appointment: (appointment.date, appointment.time),
    SortField.PATIENT: lambda appointment: appointment.patient_name.casefold(),
    SortField.DOCTOR: lambda appointment: appointment.doctor.casefold(),
    SortField.STATUS: lambda appointment: appointment.status.value,
}


def sort_appointments(appointments: Iterable[Appointment], sort: SortState) -> List[Appointment]:
    return sorted(
        appointments,
        key=_SORT_KEYS[sort.field],
        reverse=sort.direction is SortDirection.DESC,
    )


def filter_and_sort(
    appointments: Iterable[Appointment],
    filters: Optional[AppointmentFilters] = None,
    sort: Optional[SortState] = None,
    *,
    as_of: Optional[date] = None,
) -> List[Appointment]:
    filters = filters or AppointmentFilters()
    as_of = as_of or date.today()
    selected = [appointment for appointment in appointments if matches(appointment, filters, as_of)]
    return sort_appointments(selected, sort or SortState())


__all__ = [
    "AppointmentFilters",
    "DateFilter",
    "PaymentFilter",
    "SortDirection",
    "SortField",
    "SortState",
    "filter_and_sort",
    "matches",
    "sort_appointments",
]
