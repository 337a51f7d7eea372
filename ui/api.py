"""JSON API for the front desk.

This module exposes a small Flask application over the appointment store,
the consultation registry and the prescription template store. Each browser
tab identifies its consultation session with the ``X-Session-Id`` header; the
active consultation for that session lives server-side until it is completed
or cancelled.
"""
from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional

from flask import Flask, Response, jsonify, request

from connector import JsonFileKeyValueStore
from frontdesk.appointments import AppointmentStore
from frontdesk.billing import build_receipt, summarize_day
from frontdesk.consultations import ConsultationRegistry, ConsultationSession, ConsultationSessions
from frontdesk.errors import (
    FrontDeskError,
    InvalidTransitionError,
    NotFoundError,
    OperationResult,
    PersistenceError,
    ValidationError,
)
from frontdesk.listing import AppointmentFilters, SortState
from frontdesk.models import coerce_date
from frontdesk.templates import PrescriptionTemplate, PrescriptionTemplateStore

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"

# Checked in order; subclasses map with their parent.
ERROR_STATUS = (
    (ValidationError, 422),
    (InvalidTransitionError, 409),
    (NotFoundError, 404),
    (PersistenceError, 503),
)


def status_for(error: FrontDeskError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 400


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _unwrap(result: OperationResult) -> Any:
    return result.unwrap()


def create_app(
    appointment_store: Optional[AppointmentStore] = None,
    registry: Optional[ConsultationRegistry] = None,
    *,
    templates: Optional[PrescriptionTemplateStore] = None,
    today: Callable[[], date] = date.today,
) -> Flask:
    """Build the API around the given stores; missing ones share the JSON state file."""

    app = Flask(__name__)
    state = JsonFileKeyValueStore()
    store = appointment_store if appointment_store is not None else AppointmentStore()
    consultations = registry if registry is not None else ConsultationRegistry(state)
    templates = templates if templates is not None else PrescriptionTemplateStore(state)
    sessions = ConsultationSessions()

    app.extensions["frontdesk"] = {
        "appointments": store,
        "consultations": consultations,
        "sessions": sessions,
        "templates": templates,
    }

    def current_session() -> ConsultationSession:
        session_id = (request.headers.get(SESSION_HEADER) or "").strip()
        if not session_id:
            raise ValidationError(f"{SESSION_HEADER} header is required")
        return sessions.get_or_create(session_id)

    def _require_template(template_id: str) -> PrescriptionTemplate:
        template = templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Prescription template '{template_id}' does not exist")
        return template

    @app.errorhandler(FrontDeskError)
    def handle_front_desk_error(error: FrontDeskError) -> tuple[Response, int]:
        status = status_for(error)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error)
        return jsonify({"error": error.to_dict()}), status

    # Appointments

    @app.route("/appointments", methods=["GET"])
    def list_appointments() -> Response:
        filters = AppointmentFilters.from_query(request.args)
        sort = SortState.from_query(request.args)
        rows = store.list_appointments(filters, sort, as_of=today())
        return jsonify({"appointments": [row.to_dict() for row in rows], "count": len(rows)})

    @app.route("/appointments", methods=["POST"])
    def create_appointment() -> tuple[Response, int]:
        appointment = _unwrap(store.create(_json_body(), as_of=today()))
        return jsonify(appointment.to_dict()), 201

    @app.route("/appointments/<appointment_id>", methods=["GET"])
    def get_appointment(appointment_id: str) -> Response:
        appointment = store.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
        payload = appointment.to_dict()
        payload["actions"] = [action.value for action in store.available_actions(appointment_id, as_of=today())]
        return jsonify(payload)

    @app.route("/appointments/<appointment_id>", methods=["PATCH"])
    def update_appointment(appointment_id: str) -> Response:
        return jsonify(_unwrap(store.update_fields(appointment_id, _json_body())).to_dict())

    @app.route("/appointments/<appointment_id>/status", methods=["POST"])
    def transition_status(appointment_id: str) -> Response:
        body = _json_body()
        return jsonify(_unwrap(store.transition_status(appointment_id, body.get("status"))).to_dict())

    @app.route("/appointments/<appointment_id>/payment", methods=["POST"])
    def record_payment(appointment_id: str) -> Response:
        body = _json_body()
        if not isinstance(body.get("paid"), bool):
            raise ValidationError("paid must be true or false")
        result = store.record_payment(
            appointment_id, body["paid"], body.get("method"), body.get("amount")
        )
        return jsonify(_unwrap(result).to_dict())

    @app.route("/appointments/<appointment_id>/token", methods=["POST"])
    def issue_token(appointment_id: str) -> Response:
        return jsonify(_unwrap(store.issue_token(appointment_id, as_of=today())).to_dict())

    @app.route("/appointments/<appointment_id>/receipt", methods=["GET"])
    def receipt(appointment_id: str) -> Response:
        appointment = store.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
        return jsonify(build_receipt(appointment).to_dict())

    @app.route("/billing/summary", methods=["GET"])
    def billing_summary() -> Response:
        raw_date = request.args.get("date")
        target_date = coerce_date(raw_date, "date") if raw_date else today()
        return jsonify(summarize_day(store.all(), target_date).to_dict())

    # Consultations

    @app.route("/patients/<patient_id>/consultations", methods=["GET"])
    def patient_consultations(patient_id: str) -> Response:
        records = consultations.get_patient_consultations(patient_id)
        return jsonify({"consultations": [record.to_dict() for record in records]})

    @app.route("/patients/<patient_id>/incomplete-visits", methods=["GET"])
    def incomplete_visits(patient_id: str) -> Response:
        records = consultations.has_incomplete_visits(patient_id)
        return jsonify(
            {
                "hasIncomplete": bool(records),
                "consultations": [record.to_dict() for record in records],
            }
        )

    @app.route("/consultations", methods=["POST"])
    def start_consultation() -> tuple[Response, int]:
        body = _json_body()
        info = body.get("info") or {}
        if not isinstance(info, Mapping):
            raise ValidationError("info must be an object")
        outcome = _unwrap(
            consultations.start_new_consultation(
                current_session(),
                body.get("patientId"),
                body.get("patientName"),
                body.get("visitDate") or today(),
                info,
            )
        )
        return jsonify(outcome.to_dict()), 200 if outcome.resumed else 201

    @app.route("/consultations/active", methods=["GET"])
    def active_consultation() -> Response:
        session = current_session()
        active = session.active
        return jsonify(
            {"consultation": active.to_dict() if active else None, "unsaved": session.unsaved}
        )

    @app.route("/consultations/active", methods=["PATCH"])
    def update_consultation() -> Response:
        updated = _unwrap(consultations.update_consultation_data(current_session(), _json_body()))
        return jsonify(updated.to_dict())

    @app.route("/consultations/active/save", methods=["POST"])
    def save_consultation() -> Response:
        return jsonify(_unwrap(consultations.save_consultation(current_session())).to_dict())

    @app.route("/consultations/active/complete", methods=["POST"])
    def complete_consultation() -> Response:
        return jsonify(_unwrap(consultations.complete_visit(current_session())).to_dict())

    @app.route("/consultations/active/cancel", methods=["POST"])
    def cancel_consultation() -> Response:
        confirmed = _json_body().get("confirmed") is True
        discarded = _unwrap(consultations.cancel_consultation(current_session(), confirmed=confirmed))
        return jsonify(discarded.to_dict())

    @app.route("/consultations/<consultation_id>/load", methods=["POST"])
    def load_consultation(consultation_id: str) -> Response:
        loaded = _unwrap(consultations.load_consultation(current_session(), consultation_id))
        return jsonify(loaded.to_dict())

    @app.route("/consultations/<consultation_id>/follow-up", methods=["POST"])
    def start_follow_up(consultation_id: str) -> tuple[Response, int]:
        body = _json_body()
        outcome = _unwrap(
            consultations.start_follow_up(
                current_session(),
                consultation_id,
                body.get("visitDate") or today(),
                department=body.get("department"),
                doctor_name=body.get("doctorName"),
            )
        )
        return jsonify(outcome.to_dict()), 200 if outcome.resumed else 201

    @app.route("/consultations/<consultation_id>/abandon", methods=["POST"])
    def abandon_visit(consultation_id: str) -> Response:
        return jsonify(_unwrap(consultations.abandon_incomplete_visit(consultation_id)).to_dict())

    @app.route("/consultations/<consultation_id>/complete", methods=["POST"])
    def complete_incomplete_visit(consultation_id: str) -> Response:
        return jsonify(_unwrap(consultations.complete_incomplete_visit(consultation_id)).to_dict())

    # Prescription templates

    @app.route("/prescription-templates", methods=["GET"])
    def search_templates() -> Response:
        found = templates.search_templates(
            request.args.get("q", ""),
            department=request.args.get("department") or None,
            template_type=request.args.get("type") or None,
        )
        return jsonify({"templates": [item.to_dict() for item in found], "count": len(found)})

    @app.route("/prescription-templates", methods=["POST"])
    def save_template() -> tuple[Response, int]:
        return jsonify(_unwrap(templates.save_template(_json_body())).to_dict()), 201

    @app.route("/prescription-templates/<template_id>", methods=["GET"])
    def get_template(template_id: str) -> Response:
        return jsonify(_require_template(template_id).to_dict())

    @app.route("/prescription-templates/<template_id>", methods=["DELETE"])
    def delete_template(template_id: str) -> Response:
        return jsonify(_unwrap(templates.delete_template(template_id)).to_dict())

    @app.route("/consultations/active/templates", methods=["POST"])
    def save_active_as_template() -> tuple[Response, int]:
        session = current_session()
        if session.active is None:
            raise NotFoundError("No active consultation in this session")
        body = _json_body()
        saved = _unwrap(
            templates.save_from_consultation(
                session.active,
                body.get("name"),
                description=body.get("description") or "",
                department=body.get("department"),
                created_by=body.get("createdBy"),
            )
        )
        return jsonify(saved.to_dict()), 201

    @app.route("/consultations/active/templates/<template_id>", methods=["POST"])
    def apply_template(template_id: str) -> Response:
        append = _json_body().get("mode", "replace") == "append"
        updated = _unwrap(
            consultations.apply_prescription_template(
                current_session(), _require_template(template_id), append=append
            )
        )
        return jsonify(updated.to_dict())

    return app


def run(app: Flask) -> None:
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        debug=False,
    )


__all__ = ["create_app", "run", "status_for"]
