"""Reusable prescription templates kept in the ``prescription-templates`` slot.

A template is a named set of allopathic and/or ayurvedic prescription items
for a department. Doctors save one from the consultation in front of them and
later apply it to another consultation instead of retyping the medicines.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from connector import KeyValueStore, MemoryKeyValueStore

from .clinical import (
    Consultation,
    PrescriptionItem,
    Prescriptions,
    _format_timestamp,
    _parse_timestamp,
    _text,
    utc_now,
)
from .errors import NotFoundError, PersistenceError, ValidationError, returns_result
from .models import coerce_enum, normalize_keys
from .schema import migrate_prescription_entry

logger = logging.getLogger(__name__)

TEMPLATE_SLOT = "prescription-templates"


class TemplateType(str, Enum):
    ALLOPATHIC = "allopathic"
    AYURVEDIC = "ayurvedic"
    MIXED = "mixed"


def _items(value: object, label: str) -> Tuple[PrescriptionItem, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{label} must be a list of prescription entries")
    return tuple(
        PrescriptionItem.from_dict(migrate_prescription_entry(entry) if isinstance(entry, Mapping) else entry)
        for entry in value
    )


def _infer_type(allopathic: Tuple[PrescriptionItem, ...], ayurvedic: Tuple[PrescriptionItem, ...]) -> TemplateType:
    if allopathic and ayurvedic:
        return TemplateType.MIXED
    return TemplateType.ALLOPATHIC if allopathic else TemplateType.AYURVEDIC


@dataclass(frozen=True)
class PrescriptionTemplate:
    id: str
    name: str
    department: str
    template_type: TemplateType
    allopathic: Tuple[PrescriptionItem, ...] = ()
    ayurvedic: Tuple[PrescriptionItem, ...] = ()
    description: str = ""
    created_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PrescriptionTemplate":
        """Build a template from its stored camelCase shape.

        Medicine entries may still carry the ``beforeFood``/``afterFood``
        flags of older saves; they are folded into ``foodTiming``.
        """

        if not isinstance(payload, Mapping):
            raise ValidationError("templates must be objects")
        data = normalize_keys(payload)
        template_id = _text(data.get("id"))
        name = _text(data.get("name"))
        department = _text(data.get("department"))
        if not template_id:
            raise ValidationError("template id is required")
        if not name:
            raise ValidationError("template name is required")
        if not department:
            raise ValidationError("template department is required")

        allopathic = _items(data.get("allopathic_medicines", data.get("allopathic")), "allopathicMedicines")
        ayurvedic = _items(data.get("ayurvedic_medicines", data.get("ayurvedic")), "ayurvedicMedicines")
        if not allopathic and not ayurvedic:
            raise ValidationError("a template needs at least one medicine")

        raw_type = data.get("type") or data.get("template_type")
        template_type = (
            coerce_enum(TemplateType, raw_type, "type") if raw_type else _infer_type(allopathic, ayurvedic)
        )
        created_at = data.get("created_at")
        updated_at = data.get("updated_at") or created_at
        return cls(
            id=template_id,
            name=name,
            department=department,
            template_type=template_type,
            allopathic=allopathic,
            ayurvedic=ayurvedic,
            description=_text(data.get("description")),
            created_by=_text(data.get("created_by")),
            created_at=_parse_timestamp(created_at, "createdAt") if created_at else None,
            updated_at=_parse_timestamp(updated_at, "updatedAt") if updated_at else None,
        )

    @property
    def prescriptions(self) -> Prescriptions:
        return Prescriptions(allopathic=self.allopathic, ayurvedic=self.ayurvedic)

    def matches(
        self,
        query: str = "",
        department: Optional[str] = None,
        template_type: Optional[TemplateType] = None,
    ) -> bool:
        needle = query.strip().lower()
        if needle and needle not in self.name.lower() and needle not in self.description.lower():
            return False
        if department and self.department != department:
            return False
        return template_type is None or self.template_type is template_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "department": self.department,
            "type": self.template_type.value,
            "allopathicMedicines": [item.to_dict() for item in self.allopathic],
            "ayurvedicMedicines": [item.to_dict() for item in self.ayurvedic],
            "createdBy": self.created_by,
            "createdAt": _format_timestamp(self.created_at),
            "updatedAt": _format_timestamp(self.updated_at),
        }


def load_templates(payload: Optional[object]) -> List[PrescriptionTemplate]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise PersistenceError("Prescription template slot must hold a list")
    templates: List[PrescriptionTemplate] = []
    for raw in payload:
        try:
            templates.append(PrescriptionTemplate.from_dict(raw))
        except ValidationError as exc:
            label = raw.get("id", "<unknown>") if isinstance(raw, Mapping) else "<non-object>"
            logger.warning("Skipping invalid prescription template %s: %s", label, exc)
    return templates


class PrescriptionTemplateStore:
    """Save, look up, search and delete prescription templates."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store if store is not None else MemoryKeyValueStore()
        self._clock = clock
        self._templates: List[PrescriptionTemplate] = load_templates(self._store.get(TEMPLATE_SLOT))
        logger.info("Loaded %d prescription templates from slot %s", len(self._templates), TEMPLATE_SLOT)

    def get(self, template_id: str) -> Optional[PrescriptionTemplate]:
        for template in self._templates:
            if template.id == template_id:
                return template
        return None

    def all_templates(self) -> List[PrescriptionTemplate]:
        return list(self._templates)

    def search_templates(
        self,
        query: str = "",
        department: Optional[str] = None,
        template_type: Optional[object] = None,
    ) -> List[PrescriptionTemplate]:
        """Templates whose name or description contains ``query``, narrowed by department and type."""

        wanted = coerce_enum(TemplateType, template_type, "type") if template_type else None
        return [item for item in self._templates if item.matches(query or "", department, wanted)]

    @returns_result
    def save_template(self, payload: Mapping[str, Any]) -> PrescriptionTemplate:
        """Store a new template; its id and timestamps are assigned here."""

        if not isinstance(payload, Mapping):
            raise ValidationError("template must be an object")
        now = self._clock()
        data = dict(payload)
        data.update(
            id=self._next_id(now),
            createdAt=_format_timestamp(now),
            updatedAt=_format_timestamp(now),
        )
        template = PrescriptionTemplate.from_dict(data)
        self._persist(self._templates + [template])
        logger.info("Saved prescription template %s (%s)", template.id, template.name)
        return template

    @returns_result
    def save_from_consultation(
        self,
        consultation: Consultation,
        name: str,
        *,
        description: str = "",
        department: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> PrescriptionTemplate:
        prescriptions = consultation.prescriptions
        if not len(prescriptions):
            raise ValidationError("No prescriptions to save as template")
        return self.save_template(
            {
                "name": name,
                "description": description,
                "department": department or consultation.department,
                "createdBy": created_by or consultation.doctor_name,
                "allopathicMedicines": [item.to_dict() for item in prescriptions.allopathic],
                "ayurvedicMedicines": [item.to_dict() for item in prescriptions.ayurvedic],
            }
        ).unwrap()

    @returns_result
    def delete_template(self, template_id: str) -> PrescriptionTemplate:
        template = self.get(template_id)
        if template is None:
            raise NotFoundError(f"Prescription template '{template_id}' does not exist")
        self._persist([item for item in self._templates if item.id != template_id])
        logger.info("Deleted prescription template %s", template_id)
        return template

    @returns_result
    def import_templates(self, templates: List[PrescriptionTemplate]) -> int:
        known = {item.id for item in self._templates}
        added = [item for item in templates if item.id not in known]
        if added:
            self._persist(self._templates + added)
        return len(added)

    def _next_id(self, now: datetime) -> str:
        stamp = int(now.timestamp() * 1000)
        while self.get(f"template-{stamp}") is not None:
            stamp += 1
        return f"template-{stamp}"

    def _persist(self, templates: List[PrescriptionTemplate]) -> None:
        try:
            self._store.set(TEMPLATE_SLOT, [item.to_dict() for item in templates])
        except PersistenceError:
            logger.error("Failed to persist prescription templates")
            raise
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to persist prescription templates: %s", exc)
            raise PersistenceError(f"Could not save prescription templates: {exc}") from exc
        self._templates = templates


__all__ = [
    "PrescriptionTemplate",
    "PrescriptionTemplateStore",
    "TEMPLATE_SLOT",
    "TemplateType",
    "load_templates",
]
