"""Consultation registry: persisted history plus per-session active consultations.

Each user session owns one ``ConsultationSession`` holding at most one active
(in-progress) consultation. The registry owns the history list and is its
only writer; it persists the whole list to a key-value slot on every save.

The registry also tracks which session holds each open visit, keyed by
``(patient_id, visit_date)``. A visit held by one session cannot be started,
resumed or loaded by another until the holder completes or cancels it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from connector import KeyValueStore, MemoryKeyValueStore

from .clinical import Consultation, ConsultationStatus, PROTECTED_FIELDS, Prescriptions, utc_now
from .errors import (
    ConfirmationRequiredError,
    IncompleteVisitsError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    returns_result,
)
from .followup import build_follow_up
from .models import coerce_date, normalize_keys
from .schema import HISTORY_SLOT, dump_history, load_history
from .templates import PrescriptionTemplate

logger = logging.getLogger(__name__)


@dataclass
class ConsultationSession:
    """The active-consultation slot of one user session."""

    session_id: str
    active: Optional[Consultation] = None
    unsaved: bool = False

    def activate(self, consultation: Consultation, *, unsaved: bool = False) -> None:
        self.active = consultation
        self.unsaved = unsaved

    def clear(self) -> None:
        self.active = None
        self.unsaved = False


class ConsultationSessions:
    """Sessions keyed by an opaque session id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ConsultationSession] = {}

    def get_or_create(self, session_id: str) -> ConsultationSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = ConsultationSession(session_id=session_id)
            self._sessions[session_id] = session
        return session

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass(frozen=True)
class StartOutcome:
    consultation: Consultation
    resumed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"consultation": self.consultation.to_dict(), "resumed": self.resumed}


@dataclass(frozen=True)
class VisitClaim:
    """The session currently holding an open consultation."""

    consultation_id: str
    session_id: str


def _validate_identifier(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must be a non-empty string")
    return value.strip()


def _upsert(history: List[Consultation], record: Consultation) -> List[Consultation]:
    updated = [record if item.id == record.id else item for item in history]
    if not any(item.id == record.id for item in history):
        updated.append(record)
    return updated


class ConsultationRegistry:
    """Lifecycle operations over the consultation history."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store if store is not None else MemoryKeyValueStore()
        self._clock = clock
        self._claims: Dict[Tuple[str, date], VisitClaim] = {}
        self._lock = threading.RLock()
        self._history: List[Consultation] = load_history(self._store.get(HISTORY_SLOT))
        logger.info("Loaded %d consultations from slot %s", len(self._history), HISTORY_SLOT)

    # Queries

    def get(self, consultation_id: str) -> Optional[Consultation]:
        for consultation in self._history:
            if consultation.id == consultation_id:
                return consultation
        return None

    def all_consultations(self) -> List[Consultation]:
        return list(self._history)

    def get_patient_consultations(self, patient_id: str) -> List[Consultation]:
        """All of the patient's consultations, most recent visit first."""

        records = [item for item in self._history if item.patient_id == patient_id]
        return sorted(records, key=lambda item: (item.visit_date, item.created_at), reverse=True)

    def has_incomplete_visits(self, patient_id: str) -> List[Consultation]:
        return [
            item
            for item in self.get_patient_consultations(patient_id)
            if item.status is ConsultationStatus.IN_PROGRESS
        ]

    def holder_of(self, consultation_id: str) -> Optional[str]:
        """The id of the session holding ``consultation_id`` open, if any."""

        with self._lock:
            for claim in self._claims.values():
                if claim.consultation_id == consultation_id:
                    return claim.session_id
        return None

    # Lifecycle

    @returns_result
    def start_new_consultation(
        self,
        session: ConsultationSession,
        patient_id: str,
        patient_name: str,
        visit_date: Any,
        info: Optional[Mapping[str, Any]] = None,
    ) -> StartOutcome:
        """Start a consultation, or resume the in-progress one for the same visit date.

        A patient with in-progress visits on other dates must have them
        completed or abandoned first. A visit already open in another
        session is refused.
        """

        patient_id = _validate_identifier(patient_id, "patient_id")
        patient_name = _validate_identifier(patient_name, "patient_name")
        visit_date = coerce_date(visit_date, "visit_date")

        active = session.active
        if active is not None:
            if active.patient_id == patient_id and active.visit_date == visit_date:
                logger.info("Session %s resumed active consultation %s", session.session_id, active.id)
                return StartOutcome(active, resumed=True)
            raise InvalidTransitionError(
                f"Consultation {active.id} is already active; complete or cancel it first"
            )

        with self._lock:
            claim = self._claims.get((patient_id, visit_date))
            if claim is not None and claim.session_id != session.session_id:
                raise InvalidTransitionError(
                    f"Consultation {claim.consultation_id} for this visit is open in another session"
                )

            incomplete = self.has_incomplete_visits(patient_id)
            for existing in incomplete:
                if existing.visit_date == visit_date:
                    self._claim(session, existing)
                    logger.info("Session %s resumed consultation %s", session.session_id, existing.id)
                    return StartOutcome(existing, resumed=True)

            if incomplete:
                raise IncompleteVisitsError(
                    f"Patient {patient_id} has {len(incomplete)} incomplete visit(s) to complete or abandon first",
                    [item.id for item in incomplete],
                )

            consultation = self._new_consultation(patient_id, patient_name, visit_date, info or {})
            self._claim(session, consultation)
        logger.info(
            "Session %s started consultation %s for patient %s",
            session.session_id,
            consultation.id,
            patient_id,
        )
        return StartOutcome(consultation, resumed=False)

    @returns_result
    def update_consultation_data(
        self, session: ConsultationSession, patch: Mapping[str, Any]
    ) -> Consultation:
        active = self._require_active(session)
        updated = active.apply_patch(patch, now=self._clock())
        session.activate(updated, unsaved=True)
        return updated

    @returns_result
    def apply_prescription_template(
        self,
        session: ConsultationSession,
        template: PrescriptionTemplate,
        *,
        append: bool = False,
    ) -> Consultation:
        """Copy ``template``'s medicines into the active consultation.

        Each list the template covers replaces the consultation's list, or is
        appended to it when ``append`` is set. Lists the template leaves empty
        are kept.
        """

        active = self._require_active(session)
        current = active.prescriptions
        merged = {}
        for kind in ("allopathic", "ayurvedic"):
            existing = getattr(current, kind)
            incoming = getattr(template, kind)
            if not incoming:
                merged[kind] = existing
            else:
                merged[kind] = existing + incoming if append else incoming
        prescriptions = Prescriptions(**merged)
        updated = active.apply_patch({"prescriptions": prescriptions.to_dict()}, now=self._clock())
        session.activate(updated, unsaved=True)
        logger.info("Applied prescription template %s to consultation %s", template.id, active.id)
        return updated

    @returns_result
    def save_consultation(self, session: ConsultationSession) -> Consultation:
        """Checkpoint the active consultation into the history; status is unchanged."""

        active = self._require_active(session)
        self._require_open(active)
        self._persist(_upsert(self._history, active))
        session.unsaved = False
        logger.info("Saved consultation %s", active.id)
        return active

    @returns_result
    def complete_visit(self, session: ConsultationSession) -> Consultation:
        active = self._require_active(session)
        self._require_open(active)
        if not active.has_clinical_content():
            raise ValidationError(
                "Cannot complete visit: add a chief complaint, clinical notes or at least one diagnosis"
            )
        completed = self._finalize(active, ConsultationStatus.COMPLETED)
        session.clear()
        logger.info("Completed consultation %s", completed.id)
        return completed

    @returns_result
    def cancel_consultation(
        self, session: ConsultationSession, *, confirmed: bool = False
    ) -> Consultation:
        """Discard the active consultation without persisting it.

        Unsaved changes are only dropped when the caller confirms it asked the user.
        """

        active = self._require_active(session)
        if session.unsaved and not confirmed:
            raise ConfirmationRequiredError(
                f"Consultation {active.id} has unsaved changes; confirm to discard them"
            )
        self._release(active)
        session.clear()
        logger.info("Session %s discarded consultation %s", session.session_id, active.id)
        return active

    @returns_result
    def load_consultation(self, session: ConsultationSession, consultation_id: str) -> Consultation:
        record = self._require_record(consultation_id)
        if record.status is ConsultationStatus.COMPLETED:
            raise InvalidTransitionError("Cannot edit completed visit; start a follow-up instead")
        if record.status is ConsultationStatus.CANCELLED:
            raise InvalidTransitionError("Cannot edit an abandoned visit")

        active = session.active
        if active is not None:
            if active.id == record.id:
                return active
            raise InvalidTransitionError(
                f"Consultation {active.id} is already active; complete or cancel it first"
            )
        with self._lock:
            claim = self._claims.get((record.patient_id, record.visit_date))
            if claim is not None and claim.session_id != session.session_id:
                raise InvalidTransitionError(
                    f"Consultation {claim.consultation_id} is open in another session"
                )
            self._claim(session, record)
        return record

    @returns_result
    def complete_incomplete_visit(self, consultation_id: str) -> Consultation:
        record = self._require_in_progress(consultation_id)
        if not record.has_clinical_content():
            raise ValidationError(
                "Cannot complete visit: add a chief complaint, clinical notes or at least one diagnosis"
            )
        return self._finalize(record, ConsultationStatus.COMPLETED)

    @returns_result
    def abandon_incomplete_visit(self, consultation_id: str) -> Consultation:
        record = self._require_in_progress(consultation_id)
        abandoned = self._finalize(record, ConsultationStatus.CANCELLED)
        logger.info("Abandoned consultation %s", abandoned.id)
        return abandoned

    @returns_result
    def start_follow_up(
        self,
        session: ConsultationSession,
        previous_id: str,
        visit_date: Any,
        *,
        department: Optional[str] = None,
        doctor_name: Optional[str] = None,
    ) -> StartOutcome:
        """Start a consultation prefilled from a completed one, which stays untouched."""

        previous = self._require_record(previous_id)
        if previous.status is not ConsultationStatus.COMPLETED:
            raise InvalidTransitionError("Follow-ups can only be started from a completed visit")

        patch = build_follow_up(previous, department=department, doctor_name=doctor_name)
        outcome = self.start_new_consultation(
            session,
            previous.patient_id,
            previous.patient_name,
            visit_date,
            {"department": patch["department"], "doctorName": patch["doctorName"]},
        ).unwrap()
        prefilled = self.update_consultation_data(session, patch).unwrap()
        return StartOutcome(prefilled, resumed=outcome.resumed)

    @returns_result
    def import_consultations(self, records: Iterable[Consultation]) -> int:
        """Persist ``records`` whose ids are not in the history yet; returns the count added."""

        known = {item.id for item in self._history}
        added = [record for record in records if record.id not in known]
        if added:
            self._persist(self._history + added)
        logger.info("Imported %d consultations", len(added))
        return len(added)

    # Internals

    def _new_consultation(
        self,
        patient_id: str,
        patient_name: str,
        visit_date: date,
        info: Mapping[str, Any],
    ) -> Consultation:
        extra = normalize_keys(info)
        blocked = sorted(set(extra) & (PROTECTED_FIELDS | {"patient_name", "visit_date"}))
        if blocked:
            raise ValidationError(f"Fields cannot be set when starting: {', '.join(blocked)}")

        now = self._clock()
        base = Consultation(
            id=f"CONS-{patient_id}-{visit_date.isoformat()}-{int(now.timestamp() * 1000)}",
            patient_id=patient_id,
            patient_name=patient_name,
            visit_date=visit_date,
            visit_time=now.astimezone().strftime("%H:%M"),
            created_at=now,
            updated_at=now,
        )
        if not extra:
            return base
        return base.apply_patch(extra, now=now)

    def _require_active(self, session: ConsultationSession) -> Consultation:
        if session.active is None:
            raise NotFoundError("No active consultation in this session")
        return session.active

    def _require_record(self, consultation_id: str) -> Consultation:
        consultation_id = _validate_identifier(consultation_id, "consultation_id")
        record = self.get(consultation_id)
        if record is None:
            raise NotFoundError(f"Consultation '{consultation_id}' does not exist")
        return record

    def _require_in_progress(self, consultation_id: str) -> Consultation:
        record = self._require_record(consultation_id)
        if record.status is not ConsultationStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Consultation {record.id} is {record.status.value}, not in-progress"
            )
        return record

    def _require_open(self, consultation: Consultation) -> None:
        stored = self.get(consultation.id)
        if stored is not None and stored.status is not ConsultationStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Consultation {stored.id} is already {stored.status.value}; changes cannot be saved"
            )

    def _claim(self, session: ConsultationSession, consultation: Consultation) -> None:
        self._claims[(consultation.patient_id, consultation.visit_date)] = VisitClaim(
            consultation.id, session.session_id
        )
        session.activate(consultation)

    def _release(self, consultation: Consultation) -> None:
        key = (consultation.patient_id, consultation.visit_date)
        with self._lock:
            claim = self._claims.get(key)
            if claim is not None and claim.consultation_id == consultation.id:
                del self._claims[key]

    def _finalize(self, record: Consultation, status: ConsultationStatus) -> Consultation:
        now = self._clock()
        finalized = replace(record, status=status, updated_at=now, completed_at=now)
        self._persist(_upsert(self._history, finalized))
        self._release(record)
        return finalized

    def _persist(self, history: List[Consultation]) -> None:
        """Write ``history`` and adopt it only once the write succeeded."""

        try:
            self._store.set(HISTORY_SLOT, dump_history(history))
        except PersistenceError:
            logger.error("Failed to persist consultation history")
            raise
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to persist consultation history: %s", exc)
            raise PersistenceError(f"Could not save consultation history: {exc}") from exc
        self._history = history


__all__ = [
    "ConsultationRegistry",
    "ConsultationSession",
    "ConsultationSessions",
    "StartOutcome",
]
