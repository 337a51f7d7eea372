"""Front-desk API client utilities.

This module provides a high-level client for the front-desk JSON API. The
client manages HTTP session handling with retries for idempotent requests,
carries the consultation session header and turns error responses into
structured exceptions.
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__all__ = ["FrontDeskAPIError", "FrontDeskClient", "FrontDeskClientError"]


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = os.getenv("FRONTDESK_API_URL", "http://127.0.0.1:5000")
DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
SESSION_HEADER = "X-Session-Id"

# Only verbs that are safe to repeat are retried.
IDEMPOTENT_METHODS = ("GET", "HEAD", "OPTIONS", "PUT", "DELETE")


class FrontDeskClientError(RuntimeError):
    """Base exception for front-desk client errors."""


class FrontDeskAPIError(FrontDeskClientError):
    """Raised when the front-desk API returns an error response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.payload = payload or {}


class FrontDeskClient:
    """Client for the front-desk JSON API."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        session_id: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        http_session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")

        self.base_url = base_url.rstrip("/")
        self.session_id = session_id or uuid.uuid4().hex
        self.timeout = timeout
        self._session = http_session or self._build_session(
            max_retries=max_retries, backoff_factor=backoff_factor
        )

    def _build_session(self, *, max_retries: int, backoff_factor: float) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(502, 503, 504),
            allowed_methods=IDEMPOTENT_METHODS,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[Mapping[str, Any]] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200,),
    ) -> Dict[str, Any]:
        if not path:
            raise ValueError("path must be provided")
        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Accept": "application/json", SESSION_HEADER: self.session_id}

        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json_payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Request to front-desk API failed: %s", exc)
            raise FrontDeskClientError("Failed to execute request to front-desk API") from exc

        if response.status_code not in expected_status:
            raise self._error_from_response(response)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise FrontDeskClientError("Front-desk API response was not valid JSON") from exc

    @staticmethod
    def _error_from_response(response: Response) -> FrontDeskAPIError:
        body: Dict[str, Any] = {}
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                body = parsed

        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = error.get("message") or response.text[:2048] or response.reason
        logger.error(
            "Front-desk API error response: status=%s type=%s message=%s",
            response.status_code,
            error.get("type"),
            message,
        )
        return FrontDeskAPIError(
            f"Front-desk API responded with status {response.status_code}: {message}",
            status_code=response.status_code,
            error_type=error.get("type"),
            payload=error,
        )

    # Appointments

    def list_appointments(self, **filters: Any) -> Dict[str, Any]:
        """List appointments; keyword arguments become query parameters."""

        params = {key: value for key, value in filters.items() if value is not None}
        return self._request("GET", "appointments", params=params)

    def get_appointment(self, appointment_id: str) -> Dict[str, Any]:
        if not appointment_id:
            raise ValueError("appointment_id must be provided")
        return self._request("GET", f"appointments/{appointment_id}")

    def create_appointment(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, Mapping) or not payload:
            raise ValueError("payload must be a non-empty mapping")
        return self._request("POST", "appointments", json_payload=payload, expected_status=201)

    def update_appointment(self, appointment_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"appointments/{appointment_id}", json_payload=changes)

    def transition_status(self, appointment_id: str, status: str) -> Dict[str, Any]:
        return self._request(
            "POST", f"appointments/{appointment_id}/status", json_payload={"status": status}
        )

    def record_payment(
        self,
        appointment_id: str,
        *,
        paid: bool,
        method: Optional[str] = None,
        amount: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"paid": paid}
        if method is not None:
            payload["method"] = method
        if amount is not None:
            payload["amount"] = amount
        return self._request("POST", f"appointments/{appointment_id}/payment", json_payload=payload)

    def issue_token(self, appointment_id: str) -> Dict[str, Any]:
        return self._request("POST", f"appointments/{appointment_id}/token")

    def get_receipt(self, appointment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"appointments/{appointment_id}/receipt")

    def billing_summary(self, target_date: Optional[date] = None) -> Dict[str, Any]:
        params = {"date": target_date.isoformat()} if target_date else None
        return self._request("GET", "billing/summary", params=params)

    # Consultations

    def patient_consultations(self, patient_id: str) -> Dict[str, Any]:
        return self._request("GET", f"patients/{patient_id}/consultations")

    def incomplete_visits(self, patient_id: str) -> Dict[str, Any]:
        return self._request("GET", f"patients/{patient_id}/incomplete-visits")

    def start_consultation(
        self,
        patient_id: str,
        patient_name: str,
        visit_date: date,
        info: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload = {
            "patientId": patient_id,
            "patientName": patient_name,
            "visitDate": visit_date.isoformat(),
            "info": dict(info or {}),
        }
        return self._request("POST", "consultations", json_payload=payload, expected_status=(200, 201))

    def active_consultation(self) -> Dict[str, Any]:
        return self._request("GET", "consultations/active")

    def update_consultation(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", "consultations/active", json_payload=patch)

    def save_consultation(self) -> Dict[str, Any]:
        return self._request("POST", "consultations/active/save")

    def complete_consultation(self) -> Dict[str, Any]:
        return self._request("POST", "consultations/active/complete")

    def cancel_consultation(self, *, confirmed: bool = False) -> Dict[str, Any]:
        return self._request(
            "POST", "consultations/active/cancel", json_payload={"confirmed": confirmed}
        )

    def load_consultation(self, consultation_id: str) -> Dict[str, Any]:
        return self._request("POST", f"consultations/{consultation_id}/load")

    def start_follow_up(self, consultation_id: str, visit_date: date) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"consultations/{consultation_id}/follow-up",
            json_payload={"visitDate": visit_date.isoformat()},
            expected_status=(200, 201),
        )

    def abandon_visit(self, consultation_id: str) -> Dict[str, Any]:
        return self._request("POST", f"consultations/{consultation_id}/abandon")

    def complete_incomplete_visit(self, consultation_id: str) -> Dict[str, Any]:
        return self._request("POST", f"consultations/{consultation_id}/complete")

    # Prescription templates

    def search_templates(
        self,
        query: str = "",
        *,
        department: Optional[str] = None,
        template_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {"q": query, "department": department, "type": template_type}
        return self._request(
            "GET",
            "prescription-templates",
            params={key: value for key, value in params.items() if value},
        )

    def get_template(self, template_id: str) -> Dict[str, Any]:
        if not template_id:
            raise ValueError("template_id must be provided")
        return self._request("GET", f"prescription-templates/{template_id}")

    def save_template(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "prescription-templates", json_payload=payload, expected_status=201)

    def delete_template(self, template_id: str) -> Dict[str, Any]:
        if not template_id:
            raise ValueError("template_id must be provided")
        return self._request("DELETE", f"prescription-templates/{template_id}")

    def save_active_as_template(self, name: str, **details: Any) -> Dict[str, Any]:
        payload = {key: value for key, value in details.items() if value is not None}
        payload["name"] = name
        return self._request(
            "POST", "consultations/active/templates", json_payload=payload, expected_status=201
        )

    def apply_template(self, template_id: str, *, append: bool = False) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"consultations/active/templates/{template_id}",
            json_payload={"mode": "append" if append else "replace"},
        )
