"""Persisted layout of the consultation history slot and its one-time migration."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

from .clinical import Consultation
from .errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

HISTORY_SLOT = "consultation-history"
SCHEMA_VERSION = 2

_VITAL_ALIASES = {"heartRate": "pulse", "oxygenSaturation": "spo2"}
_STATUS_ALIASES = {"draft": "in-progress"}
_TYPE_ALIASES = {"new": "routine"}
# Keys written by earlier front-end builds that have no canonical counterpart.
_DROPPED_KEYS = (
    "visitId",
    "labTests",
    "radiologyTests",
    "procedures",
    "privateNotes",
    "currentMedications",
    "ayurvedicAnalysis",
    "ophthalmologyAnalysis",
)


def _diagnosis_names(value: object) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    names: List[str] = []
    if isinstance(value, Iterable):
        for entry in value:
            if isinstance(entry, Mapping):
                name = entry.get("name")
                if name:
                    names.append(str(name))
            elif entry:
                names.append(str(entry))
    return names


def _food_timing(entry: MutableMapping[str, Any]) -> None:
    before = entry.pop("beforeFood", None)
    after = entry.pop("afterFood", None)
    if "foodTiming" in entry:
        return
    if before:
        entry["foodTiming"] = "before-food"
    elif after:
        entry["foodTiming"] = "after-food"


def migrate_prescription_entry(entry: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop front-end bookkeeping keys and fold ``beforeFood``/``afterFood`` into ``foodTiming``."""

    migrated = {key: value for key, value in entry.items() if key not in ("id", "type")}
    _food_timing(migrated)
    return migrated


def _migrate_prescriptions(record: MutableMapping[str, Any]) -> None:
    prescriptions = record.get("prescriptions")
    if not isinstance(prescriptions, Mapping):
        prescriptions = {}
    prescriptions = {
        "allopathic": list(prescriptions.get("allopathic") or record.pop("allopathicPrescriptions", None) or []),
        "ayurvedic": list(prescriptions.get("ayurvedic") or record.pop("ayurvedicPrescriptions", None) or []),
    }
    record.pop("allopathicPrescriptions", None)
    record.pop("ayurvedicPrescriptions", None)
    for kind in ("allopathic", "ayurvedic"):
        migrated = []
        for entry in prescriptions[kind]:
            if isinstance(entry, Mapping):
                entry = migrate_prescription_entry(entry)
            migrated.append(entry)
        prescriptions[kind] = migrated
    record["prescriptions"] = prescriptions


def migrate_record(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Rewrite a legacy record into the canonical camelCase shape."""

    record: Dict[str, Any] = dict(raw)

    provisional = _diagnosis_names(record.get("provisionalDiagnosis"))
    for legacy_key in ("diagnosis", "diagnoses"):
        for name in _diagnosis_names(record.pop(legacy_key, None)):
            if name not in provisional:
                provisional.append(name)
    record["provisionalDiagnosis"] = provisional

    doctor_notes = record.pop("doctorNotes", None)
    if doctor_notes and not record.get("clinicalNotes"):
        record["clinicalNotes"] = doctor_notes

    examination = record.pop("physicalExamination", None)
    if examination and not record.get("clinicalFindings"):
        record["clinicalFindings"] = examination

    vitals = record.pop("vitalSigns", None)
    if vitals and not record.get("vitals"):
        record["vitals"] = vitals
    if isinstance(record.get("vitals"), Mapping):
        vitals = dict(record["vitals"])
        for legacy_key, canonical in _VITAL_ALIASES.items():
            if legacy_key in vitals:
                value = vitals.pop(legacy_key)
                vitals.setdefault(canonical, value)
        record["vitals"] = vitals

    _migrate_prescriptions(record)

    status = record.get("status")
    if status in _STATUS_ALIASES:
        record["status"] = _STATUS_ALIASES[status]
    consultation_type = record.get("consultationType")
    if consultation_type in _TYPE_ALIASES:
        record["consultationType"] = _TYPE_ALIASES[consultation_type]

    if isinstance(record.get("pastMedicalHistory"), list):
        record["pastMedicalHistory"] = ", ".join(str(item) for item in record["pastMedicalHistory"])

    for key in _DROPPED_KEYS:
        record.pop(key, None)

    if not record.get("patientName") and record.get("patientId"):
        record["patientName"] = record["patientId"]
    if not record.get("visitDate") and record.get("createdAt"):
        record["visitDate"] = str(record["createdAt"])[:10]
    if not record.get("updatedAt") and record.get("createdAt"):
        record["updatedAt"] = record["createdAt"]
    return record


def load_history(payload: Optional[object]) -> List[Consultation]:
    """Parse the stored slot value, migrating unversioned or version-1 data."""

    if payload is None:
        return []

    if isinstance(payload, list):
        version = 1
        raw_records = payload
    elif isinstance(payload, Mapping):
        version = int(payload.get("schemaVersion", 1))
        raw_records = payload.get("consultations") or []
    else:
        raise PersistenceError("Consultation history slot has an unrecognised shape")

    if version > SCHEMA_VERSION:
        raise PersistenceError(
            f"Consultation history schema {version} is newer than supported {SCHEMA_VERSION}"
        )

    consultations: List[Consultation] = []
    for raw in raw_records:
        if not isinstance(raw, Mapping):
            logger.warning("Skipping non-object consultation entry: %r", raw)
            continue
        record = migrate_record(raw) if version < SCHEMA_VERSION else dict(raw)
        try:
            consultations.append(Consultation.from_dict(record))
        except ValidationError as exc:
            logger.warning("Skipping invalid consultation %s: %s", raw.get("id", "<unknown>"), exc)
    if version < SCHEMA_VERSION:
        logger.info("Migrated %d consultation records from schema %d", len(consultations), version)
    return consultations


def dump_history(consultations: Iterable[Consultation]) -> Dict[str, Any]:
    return {
        "schemaVersion": SCHEMA_VERSION,
        "consultations": [consultation.to_dict() for consultation in consultations],
    }


__all__ = [
    "HISTORY_SLOT",
    "SCHEMA_VERSION",
    "dump_history",
    "load_history",
    "migrate_prescription_entry",
    "migrate_record",
]
