"""Storage connectors for the front-desk stores."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from frontdesk.errors import PersistenceError
from frontdesk.models import Appointment

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(os.getenv("FRONTDESK_DATA_DIR", "data"))
DEFAULT_STATE_FILE = "frontdesk_state.json"


class AppointmentTable:
    """In-memory appointment rows keyed by id, in booking order."""

    def __init__(self) -> None:
        self._rows: Dict[str, Appointment] = {}
        self._sequence: int = 1

    def next_id(self) -> str:
        while f"app-{self._sequence}" in self._rows:
            self._sequence += 1
        appointment_id = f"app-{self._sequence}"
        self._sequence += 1
        return appointment_id

    def insert(self, appointment: Appointment) -> Appointment:
        if appointment.id in self._rows:
            raise ValueError(f"Appointment '{appointment.id}' already exists")
        self._rows[appointment.id] = appointment
        return appointment

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._rows.get(appointment_id)

    def replace(self, appointment: Appointment) -> bool:
        if appointment.id not in self._rows:
            return False
        self._rows[appointment.id] = appointment
        return True

    def all(self) -> List[Appointment]:
        return list(self._rows.values())

    def __len__(self) -> int:
        return len(self._rows)


class KeyValueStore(Protocol):
    """Named-slot persistence holding JSON-compatible values."""

    def get(self, slot: str) -> Optional[Any]:
        """Return the decoded value stored under ``slot`` or ``None``."""

    def set(self, slot: str, value: Any) -> None:
        """Replace the value stored under ``slot``."""


class MemoryKeyValueStore:
    """Process-local store; values are kept serialized so callers never share objects."""

    def __init__(self) -> None:
        self._slots: Dict[str, str] = {}

    def get(self, slot: str) -> Optional[Any]:
        raw = self._slots.get(slot)
        return None if raw is None else json.loads(raw)

    def set(self, slot: str, value: Any) -> None:
        try:
            self._slots[slot] = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Value for slot '{slot}' is not serializable: {exc}") from exc


class JsonFileKeyValueStore:
    """Stores every slot in one JSON object on disk, replacing the file atomically."""

    def __init__(self, path: Optional[Path | str] = None) -> None:
        self._path = Path(path) if path else DEFAULT_DATA_DIR / DEFAULT_STATE_FILE
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, slot: str) -> Optional[Any]:
        with self._lock:
            return self._read_all().get(slot)

    def set(self, slot: str, value: Any) -> None:
        with self._lock:
            slots = self._read_all()
            slots[slot] = value
            self._write_all(slots)
        logger.debug("Persisted slot %s to %s", slot, self._path)

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw_content = self._path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise PersistenceError(f"Cannot read state file {self._path}: {exc}") from exc
        if not raw_content:
            return {}
        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise PersistenceError(
                f"State file {self._path} is corrupted and cannot be parsed: {exc.msg}"
            ) from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"State file {self._path} must contain a JSON object")
        return data

    def _write_all(self, slots: Dict[str, Any]) -> None:
        try:
            serialized = json.dumps(slots, indent=2, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"State is not serializable: {exc}") from exc
        temp_name: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle, temp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(f"{serialized}\n")
            os.replace(temp_name, self._path)
        except OSError as exc:
            if temp_name and os.path.exists(temp_name):
                os.unlink(temp_name)
            raise PersistenceError(f"Cannot write state file {self._path}: {exc}") from exc


__all__ = [
    "AppointmentTable",
    "DEFAULT_DATA_DIR",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
]
