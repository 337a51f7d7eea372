"""Printable consultation summary rendered as a one-page PDF.

The layout follows the paper prescription handed to the patient: clinic
header, patient block, vitals, diagnoses, the allopathic and ayurvedic
prescription lists, then advice and follow-up instructions. Long sections are
truncated to keep the summary on a single page.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from .clinical import Consultation, FoodTiming, PrescriptionItem

logger = logging.getLogger(__name__)

CLINIC_NAME = os.getenv("FRONTDESK_CLINIC_NAME", "Hospital Front Desk")
LINE_HEIGHT = 0.22 * inch
BOTTOM_MARGIN = 0.9 * inch
RIGHT_MARGIN = 1 * inch
BODY_FONT = ("Helvetica", 10)


def _reports_dir() -> Path:
    """Return the report output directory, creating it if necessary."""

    reports_path = Path(os.getenv("FRONTDESK_REPORT_DIR", "reports"))
    reports_path.mkdir(parents=True, exist_ok=True)
    return reports_path


def default_output_path(consultation: Consultation) -> Path:
    return _reports_dir() / f"consultation_{consultation.id}.pdf"


def _wrap(text: str, width: float, font: Tuple[str, float] = BODY_FONT) -> List[str]:
    """Split ``text`` into lines no wider than ``width`` points in ``font``."""

    return simpleSplit(text, font[0], font[1], width) or [""]


def _prescription_line(index: int, item: PrescriptionItem) -> str:
    parts = [item.medicine, item.dosage, item.frequency, item.duration]
    text = " | ".join(part for part in parts if part)
    if item.food_timing is not FoodTiming.ANY:
        text = f"{text} ({item.food_timing.value})"
    if item.instructions:
        text = f"{text} - {item.instructions}"
    return f"{index}. {text}"


class _PageWriter:
    """Top-down line cursor over a single canvas page."""

    def __init__(self, pdf: canvas.Canvas, top: float) -> None:
        self._pdf = pdf
        self._y = top
        self.truncated = False

    def heading(self, title: str) -> None:
        self._y -= LINE_HEIGHT * 0.5
        self._line(title, font=("Helvetica-Bold", 12), indent=1.0)

    def text(self, value: str, indent: float = 1.2) -> None:
        width = A4[0] - indent * inch - RIGHT_MARGIN
        for line in _wrap(value, width):
            self._line(line, font=BODY_FONT, indent=indent)

    def items(self, values: Iterable[str]) -> None:
        for value in values:
            self.text(value)

    def _line(self, value: str, *, font: tuple, indent: float) -> None:
        if self._y < BOTTOM_MARGIN:
            self.truncated = True
            return
        self._pdf.setFont(*font)
        self._pdf.drawString(indent * inch, self._y, value)
        self._y -= LINE_HEIGHT


def _draw_header(pdf: canvas.Canvas, consultation: Consultation, generated_at: datetime) -> float:
    _, height = A4
    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(1 * inch, height - 1 * inch, CLINIC_NAME)
    pdf.setFont("Helvetica", 10)
    pdf.drawString(
        1 * inch,
        height - 1.3 * inch,
        f"Consultation {consultation.id} | Printed {generated_at.strftime('%Y-%m-%d %H:%M')}",
    )
    return height - 1.7 * inch


def _draw_body(writer: _PageWriter, consultation: Consultation) -> None:
    writer.heading("Patient")
    writer.text(f"{consultation.patient_name} ({consultation.patient_id})")
    writer.text(
        f"Visit: {consultation.visit_date.isoformat()} {consultation.visit_time}"
        f" | {consultation.department or 'General'} | {consultation.doctor_name or 'Duty doctor'}"
    )
    if consultation.allergies:
        writer.text(f"Allergies: {', '.join(consultation.allergies)}")

    vitals = {label: value for label, value in consultation.vitals.to_dict().items() if value}
    if vitals:
        writer.heading("Vitals")
        writer.text(", ".join(f"{label}: {value}" for label, value in vitals.items()))

    if consultation.chief_complaint:
        writer.heading("Chief Complaint")
        writer.text(consultation.chief_complaint)

    if consultation.diagnoses:
        writer.heading("Diagnosis")
        writer.items(f"- {name}" for name in consultation.diagnoses)

    if consultation.investigations_ordered:
        writer.heading("Investigations")
        writer.items(
            f"- {item.name} ({item.urgency.value})" for item in consultation.investigations_ordered
        )

    prescriptions = consultation.prescriptions
    if prescriptions.allopathic:
        writer.heading("Prescription (Allopathic)")
        writer.items(
            _prescription_line(index, item) for index, item in enumerate(prescriptions.allopathic, start=1)
        )
    if prescriptions.ayurvedic:
        writer.heading("Prescription (Ayurvedic)")
        writer.items(
            _prescription_line(index, item) for index, item in enumerate(prescriptions.ayurvedic, start=1)
        )

    if consultation.advice:
        writer.heading("Advice")
        writer.text(consultation.advice)
    if consultation.follow_up_instructions or consultation.next_visit_date:
        writer.heading("Follow-up")
        if consultation.follow_up_instructions:
            writer.text(consultation.follow_up_instructions)
        if consultation.next_visit_date:
            writer.text(f"Next visit: {consultation.next_visit_date.isoformat()}")


def render_consultation_pdf(
    consultation: Consultation, output_path: Optional[Path | str] = None
) -> Path:
    """Draw ``consultation`` to a PDF file and return the path written."""

    output_path = Path(output_path) if output_path else default_output_path(consultation)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    pdf = canvas.Canvas(str(output_path), pagesize=A4)
    pdf.setTitle(f"Consultation {consultation.id}")
    top = _draw_header(pdf, consultation, datetime.now())
    writer = _PageWriter(pdf, top)
    _draw_body(writer, consultation)
    pdf.showPage()
    pdf.save()

    if writer.truncated:
        logger.warning("Consultation %s did not fit on one page; output truncated", consultation.id)
    logger.info("Consultation summary for %s written to %s", consultation.id, output_path)
    return output_path


__all__ = ["default_output_path", "render_consultation_pdf"]
