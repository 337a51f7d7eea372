import csv
import tempfile
import unittest
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

from frontdesk.billing import REPORT_FIELDS, build_receipt, export_daily_report, summarize_day
from frontdesk.errors import InvalidTransitionError
from frontdesk.fixtures import demo_appointments
from frontdesk.models import PaymentMethod, PaymentStatus

TODAY = date(2024, 5, 10)


class BillingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rows = demo_appointments(TODAY)
        self.by_id = {row.id: row for row in self.rows}

    def test_receipt_for_paid_appointment(self) -> None:
        receipt = build_receipt(self.by_id["app-1"])

        payload = receipt.to_dict()
        self.assertEqual(payload["appointmentId"], "app-1")
        self.assertEqual(payload["amountPaid"], "500.00")
        self.assertEqual(payload["paymentMethod"], "cash")
        self.assertEqual(payload["token"], "Token #12")
        self.assertEqual(payload["date"], TODAY.isoformat())

    def test_receipt_requires_completed_and_paid(self) -> None:
        for appointment_id in ("app-2", "app-sp-2"):
            with self.subTest(appointment_id=appointment_id):
                with self.assertRaises(InvalidTransitionError):
                    build_receipt(self.by_id[appointment_id])

    def test_summarize_day(self) -> None:
        extra = replace(
            self.by_id["app-1"],
            id="app-9",
            payment_method=PaymentMethod.UPI,
            payment_amount="250",
        )

        summary = summarize_day(self.rows + [extra], TODAY)

        self.assertEqual(summary.completed, 3)
        self.assertEqual(summary.collected, {"cash": Decimal("500.00"), "upi": Decimal("250.00")})
        self.assertEqual(summary.total_collected, Decimal("750.00"))
        self.assertEqual(summary.unpaid_count, 1)
        self.assertEqual(summary.unpaid_fees, Decimal("3500.00"))
        self.assertEqual(summary.to_dict()["totalCollected"], "750.00")

    def test_summarize_other_day_is_empty(self) -> None:
        summary = summarize_day(self.rows, TODAY + timedelta(days=2))

        self.assertEqual(summary.completed, 0)
        self.assertEqual(summary.collected, {})
        self.assertEqual(summary.total_collected, Decimal("0.00"))

    def test_unreadable_amount_counts_as_zero(self) -> None:
        broken = replace(self.by_id["app-1"], payment_amount="five hundred")

        with self.assertLogs("frontdesk.billing", level="WARNING"):
            summary = summarize_day([broken], TODAY)

        self.assertEqual(summary.collected, {"cash": Decimal("0.00")})

    def test_export_appends_rows_and_writes_header_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            report_path = Path(tmp_dir) / "billing" / "daily.csv"

            export_daily_report(self.rows, TODAY, report_path)
            returned = export_daily_report(self.rows, TODAY, report_path)

            self.assertEqual(returned, report_path)
            with report_path.open(newline="", encoding="utf-8") as handle:
                lines = handle.read().splitlines()
            with report_path.open(newline="", encoding="utf-8") as handle:
                rows = list(csv.DictReader(handle))

        self.assertEqual(lines[0].split(","), REPORT_FIELDS)
        self.assertEqual(sum(1 for line in lines if line.startswith("exported_at")), 1)
        self.assertEqual([row["appointment_id"] for row in rows], ["app-sp-2", "app-1"] * 2)
        unpaid = rows[0]
        self.assertEqual(unpaid["payment_status"], PaymentStatus.UNPAID.value)
        self.assertEqual(unpaid["payment_method"], "")
        self.assertEqual(unpaid["amount_paid"], "0.00")
        self.assertEqual(rows[1]["amount_paid"], "500.00")


if __name__ == "__main__":
    unittest.main()
