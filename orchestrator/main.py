"""Command-line entry point for front-desk operations."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from connector import DEFAULT_DATA_DIR, JsonFileKeyValueStore
from connector.frontdesk_client import DEFAULT_BASE_URL, FrontDeskClient
from frontdesk.appointments import AppointmentStore
from frontdesk.billing import export_daily_report, summarize_day
from frontdesk.consultations import ConsultationRegistry
from frontdesk.errors import NotFoundError
from frontdesk.fixtures import seed_appointments, seed_consultations, seed_templates
from frontdesk.models import Appointment
from frontdesk.printing import render_consultation_pdf
from frontdesk.templates import PrescriptionTemplateStore
from ui.api import create_app, run

LOG_PATH = DEFAULT_DATA_DIR / "task_log.json"

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


class TaskLogger:
    """Persists command runs into a JSON log."""

    def __init__(self, log_path: Path) -> None:
        self._log_path = log_path
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        task_name: str,
        status: str,
        *,
        start_time: Optional[datetime] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        completed_at = _utc_now()
        started_at = start_time or completed_at
        entry: Dict[str, object] = {
            "task": task_name,
            "status": status,
            "started_at": _format_timestamp(started_at),
            "completed_at": _format_timestamp(completed_at),
        }
        if message:
            entry["message"] = message
        if details is not None:
            entry["details"] = details

        with self._lock:
            history = self._read_history()
            history.append(entry)
            serialized = json.dumps(history, indent=2)
            self._log_path.write_text(f"{serialized}\n", encoding="utf-8")

    def entries(self) -> List[Dict[str, object]]:
        with self._lock:
            return self._read_history()

    def _read_history(self) -> List[Dict[str, object]]:
        if not self._log_path.exists():
            return []
        raw_content = self._log_path.read_text(encoding="utf-8").strip()
        if not raw_content:
            return []
        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise ValueError(
                f"Task log is corrupted and cannot be parsed: {exc.msg}"
            ) from exc
        if not isinstance(data, list):
            raise ValueError("Task log must contain a JSON list of entries.")
        return data


def execute_with_logging(
    task_name: str, action: Callable[[], Optional[Dict[str, object]]], logger: TaskLogger
) -> Optional[Dict[str, object]]:
    """Run ``action`` while emitting structured log entries."""

    start_time = _utc_now()
    details: Optional[Dict[str, object]] = None
    status = "success"
    message: Optional[str] = None

    try:
        result = action()
        if isinstance(result, dict):
            details = result
        return result
    except Exception as exc:
        status = "failed"
        message = str(exc)
        raise
    finally:
        logger.log(
            task_name,
            status,
            start_time=start_time,
            message=message,
            details=details,
        )


def _registry(state: Optional[JsonFileKeyValueStore] = None) -> ConsultationRegistry:
    return ConsultationRegistry(state if state is not None else JsonFileKeyValueStore())


def _templates(state: Optional[JsonFileKeyValueStore] = None) -> PrescriptionTemplateStore:
    return PrescriptionTemplateStore(state if state is not None else JsonFileKeyValueStore())


def run_seed() -> Dict[str, object]:
    """Persist the demo consultations and prescription templates into the state file."""

    state = JsonFileKeyValueStore()
    return {
        "consultations_added": seed_consultations(_registry(state)),
        "templates_added": seed_templates(_templates(state)),
    }


def fetch_completed_appointments(client: FrontDeskClient, target_date: date) -> List[Appointment]:
    payload = client.list_appointments(
        status="completed",
        date="upcoming",
        **{"from": target_date.isoformat(), "to": target_date.isoformat()},
    )
    return [Appointment.from_dict(row) for row in payload.get("appointments", [])]


def run_billing_report(
    target_date: date,
    output: Optional[Path] = None,
    *,
    client: Optional[FrontDeskClient] = None,
) -> Dict[str, object]:
    """Export the day's completed appointments from the running API to CSV."""

    client = client or FrontDeskClient()
    appointments = fetch_completed_appointments(client, target_date)
    summary = summarize_day(appointments, target_date)
    report_path = export_daily_report(appointments, target_date, output)
    details: Dict[str, object] = dict(summary.to_dict())
    details["report_path"] = str(report_path)
    return details


def run_print_consultation(consultation_id: str, output: Optional[Path] = None) -> Dict[str, object]:
    consultation = _registry().get(consultation_id)
    if consultation is None:
        raise NotFoundError(f"Consultation '{consultation_id}' does not exist")
    pdf_path = render_consultation_pdf(consultation, output)
    return {"consultation_id": consultation_id, "pdf_path": str(pdf_path)}


def run_server(seed: bool = False) -> None:
    store = AppointmentStore()
    state = JsonFileKeyValueStore()
    registry = _registry(state)
    templates = _templates(state)
    if seed:
        seed_appointments(store)
        seed_consultations(registry)
        seed_templates(templates)
    run(create_app(store, registry, templates=templates))


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("FRONTDESK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hospital front-desk controller")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--seed", action="store_true", help="Load demo appointments, consultations and templates")

    report = subparsers.add_parser("billing-report", help="Export the daily billing CSV")
    report.add_argument("--date", type=date.fromisoformat, default=None)
    report.add_argument("--output", type=Path, default=None)
    report.add_argument("--api-url", default=DEFAULT_BASE_URL)

    printing = subparsers.add_parser("print-consultation", help="Render a consultation to PDF")
    printing.add_argument("consultation_id")
    printing.add_argument("--output", type=Path, default=None)

    subparsers.add_parser("seed", help="Persist the demo consultations and templates")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _configure_logging()
    task_logger = TaskLogger(LOG_PATH)

    if args.command == "serve":
        task_logger.log("serve", "started", message="Front-desk API starting.")
        try:
            run_server(seed=args.seed)
        finally:
            task_logger.log("serve", "stopped", message="Front-desk API stopped.")
    elif args.command == "billing-report":
        target_date = args.date or date.today()
        client = FrontDeskClient(base_url=args.api_url)
        details = execute_with_logging(
            "billing_report",
            lambda: run_billing_report(target_date, args.output, client=client),
            task_logger,
        )
        logger.info("Billing report ready: %s", (details or {}).get("report_path"))
    elif args.command == "print-consultation":
        details = execute_with_logging(
            "print_consultation",
            lambda: run_print_consultation(args.consultation_id, args.output),
            task_logger,
        )
        logger.info("Consultation PDF ready: %s", (details or {}).get("pdf_path"))
    else:
        execute_with_logging("seed", run_seed, task_logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
