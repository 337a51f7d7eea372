import unittest

from frontdesk.clinical import ConsultationStatus, ConsultationType, FoodTiming
from frontdesk.errors import PersistenceError
from frontdesk.schema import SCHEMA_VERSION, dump_history, load_history, migrate_record

LEGACY_RECORD = {
    "id": "cons-100",
    "patientId": "pat-100",
    "patientName": "Asha Rao",
    "visitDate": "2023-11-02",
    "visitTime": "10:15",
    "consultationType": "new",
    "status": "draft",
    "diagnosis": "Gastritis",
    "diagnoses": [{"name": "Gastritis"}, {"name": "GERD"}],
    "doctorNotes": "Advised bland diet",
    "physicalExamination": "Epigastric tenderness",
    "vitalSigns": {"bloodPressure": "118/76", "heartRate": "82", "oxygenSaturation": "98"},
    "allopathicPrescriptions": [
        {"id": "rx-1", "type": "allopathic", "medicine": "Pantoprazole 40mg", "beforeFood": True}
    ],
    "ayurvedicPrescriptions": [{"medicine": "Avipattikar churna", "afterFood": True}],
    "pastMedicalHistory": ["Hypertension", "Asthma"],
    "labTests": ["CBC"],
    "createdAt": "2023-11-02T10:15:00Z",
}


class MigrationTests(unittest.TestCase):
    def test_migrate_record_folds_legacy_fields(self) -> None:
        record = migrate_record(LEGACY_RECORD)

        self.assertEqual(record["provisionalDiagnosis"], ["Gastritis", "GERD"])
        self.assertEqual(record["clinicalNotes"], "Advised bland diet")
        self.assertEqual(record["clinicalFindings"], "Epigastric tenderness")
        self.assertEqual(record["vitals"], {"bloodPressure": "118/76", "pulse": "82", "spo2": "98"})
        self.assertEqual(record["status"], "in-progress")
        self.assertEqual(record["consultationType"], "routine")
        self.assertEqual(record["pastMedicalHistory"], "Hypertension, Asthma")
        self.assertEqual(record["updatedAt"], "2023-11-02T10:15:00Z")
        for key in ("diagnosis", "diagnoses", "doctorNotes", "vitalSigns", "labTests", "allopathicPrescriptions"):
            self.assertNotIn(key, record)
        self.assertIn("diagnosis", LEGACY_RECORD)

    def test_load_history_from_unversioned_list(self) -> None:
        (consultation,) = load_history([LEGACY_RECORD])

        self.assertEqual(consultation.status, ConsultationStatus.IN_PROGRESS)
        self.assertEqual(consultation.consultation_type, ConsultationType.ROUTINE)
        self.assertEqual(consultation.vitals.pulse, "82")
        allopathic = consultation.prescriptions.allopathic[0]
        self.assertEqual(allopathic.medicine, "Pantoprazole 40mg")
        self.assertEqual(allopathic.food_timing, FoodTiming.BEFORE_FOOD)
        self.assertEqual(consultation.prescriptions.ayurvedic[0].food_timing, FoodTiming.AFTER_FOOD)

    def test_invalid_records_are_skipped(self) -> None:
        broken = {"id": "cons-bad", "createdAt": "2023-11-02T10:15:00Z"}

        history = load_history([LEGACY_RECORD, broken, "not a record"])

        self.assertEqual([item.id for item in history], ["cons-100"])

    def test_dump_and_reload_current_schema(self) -> None:
        history = load_history([LEGACY_RECORD])

        payload = dump_history(history)

        self.assertEqual(payload["schemaVersion"], SCHEMA_VERSION)
        self.assertEqual(load_history(payload), history)

    def test_newer_schema_is_refused(self) -> None:
        with self.assertRaises(PersistenceError):
            load_history({"schemaVersion": SCHEMA_VERSION + 1, "consultations": []})

    def test_empty_slot(self) -> None:
        self.assertEqual(load_history(None), [])
        with self.assertRaises(PersistenceError):
            load_history("garbage")


if __name__ == "__main__":
    unittest.main()
