import unittest
from datetime import date

from connector import MemoryKeyValueStore
from frontdesk.appointments import AppointmentStore
from frontdesk.consultations import ConsultationRegistry
from frontdesk.fixtures import seed_appointments, seed_consultations
from frontdesk.models import AppointmentAction

TODAY = date(2024, 5, 10)


class FixtureTests(unittest.TestCase):
    def test_seed_appointments_only_into_empty_store(self) -> None:
        store = AppointmentStore()

        self.assertEqual(seed_appointments(store, TODAY), 7)
        self.assertEqual(seed_appointments(store, TODAY), 0)
        self.assertEqual(len(store.all()), 7)

    def test_seeded_rows_drive_the_workflow(self) -> None:
        store = AppointmentStore()
        seed_appointments(store, TODAY)

        series = store.session_series("ortho-physio-rehab", "pat-005")
        self.assertEqual([row.session_day for row in series], [3, 5, 8])
        self.assertTrue(all(row.token is None for row in series))
        self.assertEqual(store.available_actions("app-sp-2", as_of=TODAY), [AppointmentAction.COLLECT_PAYMENT])
        self.assertEqual(store.available_actions("app-1", as_of=TODAY), [AppointmentAction.VIEW_RECEIPT])

    def test_seed_consultations_is_idempotent(self) -> None:
        kv_store = MemoryKeyValueStore()
        registry = ConsultationRegistry(kv_store)

        self.assertEqual(seed_consultations(registry, TODAY), 2)
        self.assertEqual(seed_consultations(ConsultationRegistry(kv_store), TODAY), 0)
        self.assertEqual(
            [item.id for item in ConsultationRegistry(kv_store).get_patient_consultations("pat-001")],
            ["cons-001"],
        )


if __name__ == "__main__":
    unittest.main()
