"""Follow-up (amendment) prefill built from a completed consultation."""
from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from .clinical import Consultation, ConsultationType

FOLLOW_UP_PREFIX = "Follow-up: "

_CARRIED_FIELDS = (
    "historyOfPresentIllness",
    "pastMedicalHistory",
    "familyHistory",
    "socialHistory",
    "allergies",
    "vitals",
    "systemReview",
    "clinicalFindings",
    "clinicalNotes",
    "provisionalDiagnosis",
    "differentialDiagnosis",
    "investigationsOrdered",
    "prescriptions",
    "advice",
    "followUpInstructions",
)


def follow_up_complaint(chief_complaint: str) -> str:
    if not chief_complaint or chief_complaint.startswith(FOLLOW_UP_PREFIX):
        return chief_complaint
    return f"{FOLLOW_UP_PREFIX}{chief_complaint}"


def build_follow_up(
    previous: Consultation,
    *,
    department: Optional[str] = None,
    doctor_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a patch that prefills a new consultation from ``previous``.

    The patch is a deep copy; ``previous`` is not modified. Administrative
    fields (fee, next visit date) are cleared and the source id is recorded.
    """

    source = previous.to_dict()
    patch: Dict[str, Any] = {key: copy.deepcopy(source[key]) for key in _CARRIED_FIELDS}
    patch.update(
        {
            "chiefComplaint": follow_up_complaint(previous.chief_complaint),
            "consultationType": ConsultationType.FOLLOWUP.value,
            "previousConsultationId": previous.id,
            "consultationFee": "",
            "nextVisitDate": None,
            "department": department or previous.department,
            "doctorName": doctor_name or previous.doctor_name,
        }
    )
    return patch


__all__ = ["FOLLOW_UP_PREFIX", "build_follow_up", "follow_up_complaint"]
