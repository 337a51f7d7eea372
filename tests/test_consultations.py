import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from connector import MemoryKeyValueStore
from frontdesk.clinical import ConsultationStatus, ConsultationType
from frontdesk.consultations import ConsultationRegistry, ConsultationSession, ConsultationSessions
from frontdesk.errors import (
    ConfirmationRequiredError,
    IncompleteVisitsError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from frontdesk.schema import HISTORY_SLOT, SCHEMA_VERSION

VISIT_DATE = date(2024, 5, 10)


class SteppingClock:
    """Returns a strictly increasing timestamp on every call."""

    def __init__(self) -> None:
        self._now = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now


CLINICAL_PATCH = {
    "chiefComplaint": "Fever and headache for 3 days",
    "provisionalDiagnosis": ["Viral Fever"],
    "vitals": {"bloodPressure": "120/80", "pulse": "88"},
    "prescriptions": {
        "allopathic": [{"medicine": "Paracetamol 500mg", "frequency": "TDS", "foodTiming": "after-food"}],
        "ayurvedic": [],
    },
    "consultationFee": "500",
}


class ConsultationRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.kv_store = MemoryKeyValueStore()
        self.registry = ConsultationRegistry(self.kv_store, clock=SteppingClock())
        self.session = ConsultationSession(session_id="desk-1")

    def _start(self, session=None, patient_id="pat-001", visit_date=VISIT_DATE):
        result = self.registry.start_new_consultation(
            session or self.session, patient_id, "John Doe", visit_date, {"department": "General Medicine"}
        )
        self.assertTrue(result, result.error)
        return result.value

    def _complete_with_content(self):
        if self.session.active is None:
            self._start()
        self.registry.update_consultation_data(self.session, CLINICAL_PATCH).unwrap()
        return self.registry.complete_visit(self.session).unwrap()

    def test_start_creates_in_progress_consultation(self) -> None:
        outcome = self._start()

        consultation = outcome.consultation
        self.assertFalse(outcome.resumed)
        self.assertTrue(consultation.id.startswith("CONS-pat-001-2024-05-10-"))
        self.assertEqual(consultation.status, ConsultationStatus.IN_PROGRESS)
        self.assertEqual(consultation.department, "General Medicine")
        self.assertEqual(len(consultation.prescriptions), 0)
        self.assertIs(self.session.active, consultation)
        self.assertFalse(self.session.unsaved)
        self.assertEqual(self.registry.all_consultations(), [])

    def test_start_twice_resumes_same_consultation(self) -> None:
        first = self._start()
        second = self._start()

        self.assertTrue(second.resumed)
        self.assertEqual(first.consultation.id, second.consultation.id)

    def test_saved_consultation_resumes_in_another_session_once_released(self) -> None:
        first = self._start()
        self.registry.save_consultation(self.session).unwrap()
        self.registry.cancel_consultation(self.session).unwrap()

        other = ConsultationSession(session_id="desk-2")
        second = self._start(session=other)

        self.assertTrue(second.resumed)
        self.assertEqual(second.consultation.id, first.consultation.id)
        self.assertEqual(self.registry.holder_of(first.consultation.id), "desk-2")
        self.assertEqual(len(self.registry.all_consultations()), 1)

    def test_visit_open_in_one_session_is_refused_to_another(self) -> None:
        started = self._start().consultation
        other = ConsultationSession(session_id="desk-2")

        result = self.registry.start_new_consultation(other, "pat-001", "John Doe", VISIT_DATE)

        self.assertIsInstance(result.error, InvalidTransitionError)
        self.assertIn("open in another session", str(result.error))
        self.assertIsNone(other.active)

        self.registry.save_consultation(self.session).unwrap()
        retry = self.registry.start_new_consultation(other, "pat-001", "John Doe", VISIT_DATE)
        self.assertIsInstance(retry.error, InvalidTransitionError)
        self.assertIsInstance(self.registry.load_consultation(other, started.id).error, InvalidTransitionError)
        self.assertIsNone(other.active)
        self.assertEqual(self.registry.holder_of(started.id), "desk-1")

        self._complete_with_content()
        self.assertIsNone(self.registry.holder_of(started.id))
        self.assertEqual(
            [item.status for item in self.registry.all_consultations()], [ConsultationStatus.COMPLETED]
        )

    def test_concurrent_starts_leave_one_in_progress_record(self) -> None:
        other = ConsultationSession(session_id="desk-2")
        self._start()
        self.assertFalse(self.registry.start_new_consultation(other, "pat-001", "John Doe", VISIT_DATE))

        self.registry.save_consultation(self.session).unwrap()
        self.assertIsInstance(self.registry.save_consultation(other).error, NotFoundError)

        self.assertEqual(len(self.registry.has_incomplete_visits("pat-001")), 1)

    def test_unsaved_new_visit_is_released_on_cancel(self) -> None:
        first = self._start().consultation
        self.registry.cancel_consultation(self.session).unwrap()
        other = ConsultationSession(session_id="desk-2")

        second = self._start(session=other)

        self.assertFalse(second.resumed)
        self.assertNotEqual(second.consultation.id, first.id)
        self.assertIsNone(self.registry.holder_of(first.id))

    def test_stale_session_cannot_overwrite_finalized_record(self) -> None:
        started = self._start().consultation
        self.registry.update_consultation_data(self.session, CLINICAL_PATCH).unwrap()
        self.registry.save_consultation(self.session).unwrap()
        completed = self.registry.complete_incomplete_visit(started.id).unwrap()

        self.registry.update_consultation_data(self.session, {"advice": "Late edit"}).unwrap()
        save_result = self.registry.save_consultation(self.session)
        complete_result = self.registry.complete_visit(self.session)

        self.assertIsInstance(save_result.error, InvalidTransitionError)
        self.assertIn("already completed", str(save_result.error))
        self.assertIsInstance(complete_result.error, InvalidTransitionError)
        self.assertEqual(self.registry.get(started.id), completed)
        self.assertTrue(self.registry.cancel_consultation(self.session, confirmed=True))

    def test_stale_session_cannot_revive_abandoned_record(self) -> None:
        started = self._start().consultation
        self.registry.save_consultation(self.session).unwrap()
        self.registry.abandon_incomplete_visit(started.id).unwrap()

        result = self.registry.save_consultation(self.session)

        self.assertIsInstance(result.error, InvalidTransitionError)
        self.assertEqual(self.registry.get(started.id).status, ConsultationStatus.CANCELLED)

    def test_start_rejects_second_active_consultation(self) -> None:
        self._start()

        result = self.registry.start_new_consultation(self.session, "pat-002", "Jane Smith", VISIT_DATE)

        self.assertIsInstance(result.error, InvalidTransitionError)
        self.assertEqual(self.session.active.patient_id, "pat-001")

    def test_sessions_are_independent(self) -> None:
        sessions = ConsultationSessions()
        desk_one = sessions.get_or_create("one")
        desk_two = sessions.get_or_create("two")

        self._start(session=desk_one)
        result = self.registry.start_new_consultation(desk_two, "pat-002", "Jane Smith", VISIT_DATE)

        self.assertTrue(result)
        self.assertIs(sessions.get_or_create("one"), desk_one)
        self.assertEqual(len(sessions), 2)

    def test_start_validates_input(self) -> None:
        for patient_id, visit_date in (("", VISIT_DATE), ("pat-001", "not-a-date")):
            with self.subTest(patient_id=patient_id, visit_date=visit_date):
                result = self.registry.start_new_consultation(self.session, patient_id, "John", visit_date)
                self.assertIsInstance(result.error, ValidationError)
        self.assertIsNone(self.session.active)

    def test_update_merges_patch_and_marks_unsaved(self) -> None:
        started = self._start().consultation

        updated = self.registry.update_consultation_data(self.session, CLINICAL_PATCH).unwrap()

        self.assertEqual(updated.id, started.id)
        self.assertEqual(updated.chief_complaint, "Fever and headache for 3 days")
        self.assertEqual(updated.prescriptions.allopathic[0].medicine, "Paracetamol 500mg")
        self.assertEqual(updated.department, "General Medicine")
        self.assertGreater(updated.updated_at, started.updated_at)
        self.assertEqual(started.chief_complaint, "")
        self.assertTrue(self.session.unsaved)

    def test_update_rejects_protected_and_unknown_fields(self) -> None:
        self._start()

        for patch_payload in ({"status": "completed"}, {"patientId": "pat-999"}, {"favouriteColour": "red"}):
            with self.subTest(patch=patch_payload):
                result = self.registry.update_consultation_data(self.session, patch_payload)
                self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(self.session.active.status, ConsultationStatus.IN_PROGRESS)

    def test_update_without_active_consultation(self) -> None:
        result = self.registry.update_consultation_data(self.session, {"advice": "Rest"})

        self.assertIsInstance(result.error, NotFoundError)

    def test_save_persists_versioned_history(self) -> None:
        started = self._start().consultation
        self.registry.update_consultation_data(self.session, {"advice": "Rest"}).unwrap()

        saved = self.registry.save_consultation(self.session).unwrap()

        self.assertEqual(saved.status, ConsultationStatus.IN_PROGRESS)
        self.assertFalse(self.session.unsaved)
        payload = self.kv_store.get(HISTORY_SLOT)
        self.assertEqual(payload["schemaVersion"], SCHEMA_VERSION)
        self.assertEqual([item["id"] for item in payload["consultations"]], [started.id])

        reloaded = ConsultationRegistry(self.kv_store)
        self.assertEqual(reloaded.get(started.id).advice, "Rest")

    def test_saving_twice_upserts(self) -> None:
        self._start()
        self.registry.save_consultation(self.session).unwrap()
        self.registry.update_consultation_data(self.session, {"advice": "Rest"}).unwrap()
        self.registry.save_consultation(self.session).unwrap()

        self.assertEqual(len(self.registry.all_consultations()), 1)
        self.assertEqual(self.registry.all_consultations()[0].advice, "Rest")

    def test_failed_save_leaves_history_unchanged(self) -> None:
        self._start()

        with patch.object(self.kv_store, "set", side_effect=PersistenceError("disk full")):
            result = self.registry.save_consultation(self.session)

        self.assertFalse(result)
        self.assertIsInstance(result.error, PersistenceError)
        self.assertEqual(self.registry.all_consultations(), [])
        self.assertIsNotNone(self.session.active)

    def test_store_os_error_is_reported_as_persistence_error(self) -> None:
        self._start()

        with patch.object(self.kv_store, "set", side_effect=OSError("read-only filesystem")):
            result = self.registry.save_consultation(self.session)

        self.assertIsInstance(result.error, PersistenceError)

    def test_complete_without_clinical_content_fails(self) -> None:
        self._start()

        result = self.registry.complete_visit(self.session)

        self.assertIsInstance(result.error, ValidationError)
        self.assertIn("chief complaint", str(result.error))
        self.assertIsNotNone(self.session.active)
        self.assertEqual(self.session.active.status, ConsultationStatus.IN_PROGRESS)
        self.assertEqual(self.registry.all_consultations(), [])

    def test_complete_visit_clears_slot_and_records_once(self) -> None:
        started = self._start().consultation
        self.registry.save_consultation(self.session).unwrap()

        completed = self._complete_with_content()

        self.assertIsNone(self.session.active)
        self.assertEqual(completed.status, ConsultationStatus.COMPLETED)
        self.assertIsNotNone(completed.completed_at)
        history = self.registry.get_patient_consultations("pat-001")
        self.assertEqual([item.id for item in history], [started.id])
        self.assertEqual(history[0].status, ConsultationStatus.COMPLETED)

    def test_blank_diagnoses_are_not_clinical_content(self) -> None:
        self._start()

        updated = self.registry.update_consultation_data(
            self.session, {"provisionalDiagnosis": "   ", "differentialDiagnosis": ["", "  "]}
        ).unwrap()
        result = self.registry.complete_visit(self.session)

        self.assertEqual(updated.provisional_diagnosis, ())
        self.assertEqual(updated.differential_diagnosis, ())
        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(self.registry.all_consultations(), [])

    def test_any_single_clinical_field_allows_completion(self) -> None:
        for patch_payload in (
            {"chiefComplaint": "Cough"},
            {"clinicalNotes": "Chest clear"},
            {"differentialDiagnosis": ["Asthma"]},
        ):
            with self.subTest(patch=patch_payload):
                session = ConsultationSession(session_id=str(patch_payload))
                patient_id = f"pat-{len(self.registry.all_consultations())}"
                self._start(session=session, patient_id=patient_id)
                self.registry.update_consultation_data(session, patch_payload).unwrap()
                self.assertTrue(self.registry.complete_visit(session))

    def test_loading_completed_consultation_is_rejected(self) -> None:
        completed = self._complete_with_content()

        result = self.registry.load_consultation(self.session, completed.id)

        self.assertIsInstance(result.error, InvalidTransitionError)
        self.assertIn("Cannot edit completed visit", str(result.error))
        self.assertIsNone(self.session.active)

    def test_load_in_progress_consultation(self) -> None:
        started = self._start().consultation
        self.registry.save_consultation(self.session).unwrap()
        self.registry.cancel_consultation(self.session).unwrap()
        other = ConsultationSession(session_id="desk-2")

        loaded = self.registry.load_consultation(other, started.id).unwrap()

        self.assertEqual(loaded.id, started.id)
        self.assertIs(other.active, loaded)
        self.assertEqual(self.registry.holder_of(started.id), "desk-2")
        self.assertIsInstance(self.registry.load_consultation(self.session, started.id).error, InvalidTransitionError)
        self.assertIsNone(self.session.active)
        self.assertIsInstance(self.registry.load_consultation(other, "missing").error, NotFoundError)

    def test_cancel_with_unsaved_changes_requires_confirmation(self) -> None:
        self._start()
        self.registry.update_consultation_data(self.session, {"advice": "Rest"}).unwrap()

        result = self.registry.cancel_consultation(self.session)

        self.assertIsInstance(result.error, ConfirmationRequiredError)
        self.assertIsNotNone(self.session.active)

        discarded = self.registry.cancel_consultation(self.session, confirmed=True).unwrap()
        self.assertEqual(discarded.advice, "Rest")
        self.assertIsNone(self.session.active)
        self.assertEqual(self.registry.all_consultations(), [])

    def test_cancel_without_changes_needs_no_confirmation(self) -> None:
        self._start()

        self.assertTrue(self.registry.cancel_consultation(self.session))
        self.assertIsNone(self.session.active)

    def test_incomplete_visit_blocks_new_consultation(self) -> None:
        stale = self._start(visit_date=VISIT_DATE - timedelta(days=7)).consultation
        self.registry.save_consultation(self.session).unwrap()
        self.registry.cancel_consultation(self.session).unwrap()

        self.assertEqual([item.id for item in self.registry.has_incomplete_visits("pat-001")], [stale.id])
        result = self.registry.start_new_consultation(self.session, "pat-001", "John Doe", VISIT_DATE)

        self.assertIsInstance(result.error, IncompleteVisitsError)
        self.assertEqual(result.error.consultation_ids, [stale.id])
        self.assertEqual(result.error.to_dict()["consultationIds"], [stale.id])
        self.assertIsNone(self.session.active)

        abandoned = self.registry.abandon_incomplete_visit(stale.id).unwrap()
        self.assertEqual(abandoned.status, ConsultationStatus.CANCELLED)
        self.assertEqual(self.registry.has_incomplete_visits("pat-001"), [])
        self.assertTrue(self.registry.start_new_consultation(self.session, "pat-001", "John Doe", VISIT_DATE))

    def test_complete_incomplete_visit_requires_content(self) -> None:
        stale = self._start().consultation
        self.registry.save_consultation(self.session).unwrap()
        self.registry.cancel_consultation(self.session).unwrap()

        self.assertIsInstance(self.registry.complete_incomplete_visit(stale.id).error, ValidationError)

        self._start()
        self.registry.update_consultation_data(self.session, {"clinicalNotes": "Recovered"}).unwrap()
        self.registry.save_consultation(self.session).unwrap()
        completed = self.registry.complete_incomplete_visit(stale.id).unwrap()

        self.assertEqual(completed.status, ConsultationStatus.COMPLETED)
        self.assertIsInstance(self.registry.abandon_incomplete_visit(stale.id).error, InvalidTransitionError)

    def test_patient_history_sorted_newest_first(self) -> None:
        for offset in (3, 1, 2):
            self._start(visit_date=VISIT_DATE - timedelta(days=offset))
            self._complete_with_content()

        history = self.registry.get_patient_consultations("pat-001")

        self.assertEqual(
            [item.visit_date for item in history],
            [VISIT_DATE - timedelta(days=days) for days in (1, 2, 3)],
        )

    def test_follow_up_copies_clinical_fields_and_leaves_source_untouched(self) -> None:
        source = self._complete_with_content()

        outcome = self.registry.start_follow_up(self.session, source.id, VISIT_DATE + timedelta(days=14)).unwrap()

        follow_up = outcome.consultation
        self.assertNotEqual(follow_up.id, source.id)
        self.assertEqual(follow_up.visit_date, VISIT_DATE + timedelta(days=14))
        self.assertEqual(follow_up.chief_complaint, "Follow-up: Fever and headache for 3 days")
        self.assertEqual(follow_up.consultation_type, ConsultationType.FOLLOWUP)
        self.assertEqual(follow_up.previous_consultation_id, source.id)
        self.assertEqual(follow_up.consultation_fee, "")
        self.assertEqual(follow_up.prescriptions, source.prescriptions)
        self.assertEqual(follow_up.provisional_diagnosis, ("Viral Fever",))
        self.assertEqual(follow_up.status, ConsultationStatus.IN_PROGRESS)

        stored = self.registry.get(source.id)
        self.assertEqual(stored, source)
        self.assertEqual(stored.chief_complaint, "Fever and headache for 3 days")

    def test_follow_up_requires_completed_source(self) -> None:
        started = self._start().consultation
        self.registry.save_consultation(self.session).unwrap()

        result = self.registry.start_follow_up(
            ConsultationSession(session_id="desk-2"), started.id, VISIT_DATE + timedelta(days=1)
        )

        self.assertIsInstance(result.error, InvalidTransitionError)

    def test_legacy_history_is_migrated_on_load(self) -> None:
        self.kv_store.set(
            HISTORY_SLOT,
            [
                {
                    "id": "cons-legacy",
                    "patientId": "pat-009",
                    "visitDate": "2023-12-01",
                    "diagnosis": "Migraine",
                    "status": "completed",
                    "createdAt": "2023-12-01T10:00:00Z",
                }
            ],
        )

        registry = ConsultationRegistry(self.kv_store)

        record = registry.get("cons-legacy")
        self.assertEqual(record.provisional_diagnosis, ("Migraine",))
        self.assertEqual(record.patient_name, "pat-009")

    def test_import_consultations_skips_known_ids(self) -> None:
        completed = self._complete_with_content()

        added = self.registry.import_consultations([completed]).unwrap()

        self.assertEqual(added, 0)
        self.assertEqual(len(self.registry.all_consultations()), 1)


if __name__ == "__main__":
    unittest.main()
