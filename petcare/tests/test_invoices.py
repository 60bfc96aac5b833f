import json
import unittest

from petcare.marketplace.errors import (
    BookingNotCompletedError,
    ConflictError,
    DuplicateInvoiceError,
    IllegalStatusTransitionError,
    InvalidAmountError,
    NoActiveFeeError,
    PdfRenderError,
    ValidationError,
)
from petcare.tests.support import MarketplaceTestCase


class InvoiceGenerationTestCase(MarketplaceTestCase):
    def test_completed_booking_is_invoiced_with_fee(self) -> None:
        booking = self.make_booking(price="100.00")
        self.complete_booking(booking)
        invoice = self.system.get_invoice_for_booking(booking["id"])
        self.assertEqual(invoice["status"], "DRAFT")
        self.assertMoney(invoice["subtotal"], "100.00")
        self.assertMoney(invoice["platform_fee"], "10.00")
        self.assertMoney(invoice["discount_amount"], "0.00")
        self.assertMoney(invoice["total"], "110.00")
        self.assertEqual(invoice["invoice_number"], "INV-2026-00001")
        self.assertEqual(invoice["issue_date"], "2026-03-02")
        self.assertEqual(invoice["due_date"], "2026-03-17")
        self.assertEqual(len(invoice["items"]), 1)
        self.assertMoney(invoice["items"][0]["line_total"], "100.00")

    def test_invoice_numbers_are_sequential(self) -> None:
        first = self.make_booking()
        second = self.make_booking()
        self.complete_booking(first)
        self.complete_booking(second)
        numbers = [
            self.system.get_invoice_for_booking(booking["id"])["invoice_number"]
            for booking in (first, second)
        ]
        self.assertEqual(numbers, ["INV-2026-00001", "INV-2026-00002"])
        self.assertEqual(
            self.system.get_invoice_by_number("INV-2026-00002")["booking_id"], second["id"]
        )

    def test_coupon_discount_flows_into_invoice(self) -> None:
        booking = self.make_booking(price="50.00")
        self.system.create_coupon(
            coupon_code="SPRING20", discount_type="PERCENTAGE", discount_value="20", expiry_date="2026-12-31"
        )
        self.system.apply_coupon(
            booking_id=booking["id"], account_id=self.account["id"], coupon_code="SPRING20"
        )
        self.complete_booking(booking)
        invoice = self.system.get_invoice_for_booking(booking["id"])
        self.assertMoney(invoice["platform_fee"], "5.00")
        self.assertMoney(invoice["discount_amount"], "10.00")
        self.assertMoney(invoice["total"], "45.00")

    def test_second_invoice_is_rejected(self) -> None:
        booking = self.make_booking()
        self.complete_booking(booking)
        with self.assertRaises(DuplicateInvoiceError):
            self.system.generate_invoice(booking_id=booking["id"])
        self.assertEqual(len(self.system.list_invoices(account_id=self.account["id"])), 1)

    def test_only_completed_bookings_are_invoiced(self) -> None:
        booking = self.make_booking()
        with self.assertRaises(BookingNotCompletedError) as ctx:
            self.system.generate_invoice(booking_id=booking["id"])
        self.assertEqual(ctx.exception.status_code, 422)

    def test_latest_active_fee_wins(self) -> None:
        self.system.create_platform_fee(value="0.15")
        booking = self.make_booking()
        self.complete_booking(booking)
        self.assertMoney(self.system.get_invoice_for_booking(booking["id"])["platform_fee"], "15.00")

    def test_fixed_amount_fee(self) -> None:
        self.system.create_platform_fee(value="2.50", fee_type="FIXED_AMOUNT", deactivate_previous=True)
        booking = self.make_booking()
        self.complete_booking(booking)
        self.assertMoney(self.system.get_invoice_for_booking(booking["id"])["total"], "102.50")

    def test_failed_generation_is_queued_and_retried(self) -> None:
        self.system.deactivate_platform_fee(self.fee["id"])
        with self.assertRaises(NoActiveFeeError):
            self.system.get_active_platform_fee()
        booking = self.make_booking()
        completed = self.complete_booking(booking)
        self.assertEqual(completed["status"], "COMPLETED")
        self.assertEqual(completed["invoice_generation"]["status"], "queued")
        pending = self.system.list_pending_invoice_generations()
        self.assertEqual([row["booking_id"] for row in pending], [booking["id"]])

        result = self.system.retry_pending_invoices()
        self.assertEqual(result["succeeded"], [])
        self.assertEqual(self.system.list_pending_invoice_generations()[0]["attempts"], 2)

        self.system.create_platform_fee(value="0.10")
        result = self.system.retry_pending_invoices()
        self.assertEqual(result["succeeded"], [booking["id"]])
        self.assertEqual(self.system.list_pending_invoice_generations(), [])
        self.assertMoney(self.system.get_invoice_for_booking(booking["id"])["total"], "110.00")


class InvoiceLifecycleTestCase(MarketplaceTestCase):
    def setUp(self) -> None:
        super().setUp()
        booking = self.make_booking()
        self.complete_booking(booking)
        self.invoice = self.system.get_invoice_for_booking(booking["id"])

    def outbox(self) -> list:
        return self.system.conn.execute("SELECT * FROM email_outbox ORDER BY id").fetchall()

    def test_send_emails_pdf_to_account_owner(self) -> None:
        sent = self.system.send_invoice(self.invoice["id"])
        self.assertEqual(sent["status"], "SENT")
        self.assertEqual(sent["delivery"], "sent")
        [mail] = self.outbox()
        self.assertEqual(mail["recipient"], "jordan@example.com")
        self.assertEqual(mail["template_name"], "invoice_sent")
        self.assertEqual(json.loads(mail["variables"])["invoice_number"], "INV-2026-00001")
        [attachment] = json.loads(mail["attachments"])
        self.assertEqual(attachment["filename"], "INV-2026-00001.pdf")
        self.assertGreater(attachment["size"], 0)

    def test_delivery_failure_keeps_invoice_sent(self) -> None:
        def broken_renderer(invoice, **kwargs):
            raise RuntimeError("font missing")

        self.system.pdf_renderer = broken_renderer
        sent = self.system.send_invoice(self.invoice["id"])
        self.assertEqual(sent["delivery"], "failed")
        self.assertEqual(self.system.get_invoice(self.invoice["id"])["status"], "SENT")
        with self.assertRaises(PdfRenderError):
            self.system.render_invoice_pdf(self.invoice["id"])

    def test_pdf_rendering(self) -> None:
        content = self.system.render_invoice_pdf(self.invoice["id"])
        self.assertTrue(content.startswith(b"%PDF"))

    def test_cannot_send_twice(self) -> None:
        self.system.send_invoice(self.invoice["id"])
        with self.assertRaises(IllegalStatusTransitionError):
            self.system.send_invoice(self.invoice["id"])

    def test_partial_then_full_payment(self) -> None:
        self.system.send_invoice(self.invoice["id"])
        partial = self.system.record_payment(invoice_id=self.invoice["id"], amount="60.00")
        self.assertEqual(partial["status"], "PARTIALLY_PAID")
        self.assertMoney(partial["balance_due"], "50.00")
        with self.assertRaises(InvalidAmountError):
            self.system.record_payment(invoice_id=self.invoice["id"], amount="50.01")
        paid = self.system.record_payment(invoice_id=self.invoice["id"], amount="50.00")
        self.assertEqual(paid["status"], "PAID")
        self.assertMoney(paid["amount_paid"], "110.00")
        self.assertEqual(len(paid["payments"]), 2)

    def test_payment_on_draft_is_rejected(self) -> None:
        with self.assertRaises(IllegalStatusTransitionError):
            self.system.record_payment(invoice_id=self.invoice["id"], amount="10.00")

    def test_payment_with_stored_card(self) -> None:
        method = self.system.add_payment_method(
            account_id=self.account["id"],
            card_number="4111 1111 1111 1111",
            card_type="visa",
            expiry_month=12,
            expiry_year=2030,
        )
        self.system.send_invoice(self.invoice["id"])
        paid = self.system.record_payment(
            invoice_id=self.invoice["id"], amount="110.00", payment_method_id=method["id"]
        )
        self.assertEqual(paid["payments"][0]["payment_method_id"], method["id"])

    def test_cancel_draft_needs_reason(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.cancel_invoice(invoice_id=self.invoice["id"], reason="")
        cancelled = self.system.cancel_invoice(invoice_id=self.invoice["id"], reason="Duplicate booking")
        self.assertEqual(cancelled["status"], "CANCELLED")
        self.assertIsNone(cancelled["refund"])
        self.assertIn("CANCELLED: Duplicate booking", cancelled["notes"])

    def test_cancel_partially_paid_records_refund(self) -> None:
        self.system.send_invoice(self.invoice["id"])
        self.system.record_payment(invoice_id=self.invoice["id"], amount="30.00")
        cancelled = self.system.cancel_invoice(invoice_id=self.invoice["id"], reason="Service issue")
        self.assertMoney(cancelled["refund"]["amount"], "30.00")
        self.assertEqual(cancelled["refund"]["status"], "pending")

    def test_paid_invoice_is_refunded_not_cancelled(self) -> None:
        self.system.send_invoice(self.invoice["id"])
        self.system.record_payment(invoice_id=self.invoice["id"], amount="110.00")
        with self.assertRaises(IllegalStatusTransitionError):
            self.system.cancel_invoice(invoice_id=self.invoice["id"], reason="Changed mind")
        refunded = self.system.refund_invoice(invoice_id=self.invoice["id"], reason="Changed mind")
        self.assertEqual(refunded["status"], "REFUNDED")
        self.assertMoney(refunded["refund"]["amount"], "110.00")
        self.assertEqual(len(self.system.list_refunds(invoice_id=self.invoice["id"])), 1)

    def test_update_invoice(self) -> None:
        updated = self.system.update_invoice(
            invoice_id=self.invoice["id"], due_date="2026-04-01", notes="Net 30"
        )
        self.assertEqual(updated["due_date"], "2026-04-01")
        with self.assertRaises(ValidationError):
            self.system.update_invoice(invoice_id=self.invoice["id"], due_date="2026-01-01")
        self.system.cancel_invoice(invoice_id=self.invoice["id"], reason="Void")
        with self.assertRaises(ConflictError):
            self.system.update_invoice(invoice_id=self.invoice["id"], notes="Too late")

    def test_overdue_invoices(self) -> None:
        self.system.send_invoice(self.invoice["id"])
        self.assertEqual(self.system.list_overdue_invoices(), [])
        self.clock.advance(days=16)
        overdue = self.system.list_overdue_invoices()
        self.assertEqual([row["id"] for row in overdue], [self.invoice["id"]])

    def test_list_invoices_by_status(self) -> None:
        self.assertEqual(len(self.system.list_invoices(status=["draft"])), 1)
        self.assertEqual(self.system.list_invoices(status=["SENT", "PAID"]), [])


class InvoiceStatusGuardTestCase(MarketplaceTestCase):
    def invoice_in(self, status: str) -> dict:
        booking = self.make_booking()
        self.complete_booking(booking)
        invoice_id = self.system.get_invoice_for_booking(booking["id"])["id"]
        if status in ("SENT", "PARTIALLY_PAID", "PAID", "REFUNDED"):
            self.system.send_invoice(invoice_id)
        if status == "PARTIALLY_PAID":
            self.system.record_payment(invoice_id=invoice_id, amount="10.00")
        if status in ("PAID", "REFUNDED"):
            self.system.record_payment(invoice_id=invoice_id, amount="110.00")
        if status == "REFUNDED":
            self.system.refund_invoice(invoice_id=invoice_id, reason="Testing")
        if status == "CANCELLED":
            self.system.cancel_invoice(invoice_id=invoice_id, reason="Testing")
        return self.system.get_invoice(invoice_id)

    def test_rejected_operations_leave_the_invoice_untouched(self) -> None:
        operations = {
            "send": (("DRAFT",), lambda invoice_id: self.system.send_invoice(invoice_id)),
            "pay": (
                ("SENT", "PARTIALLY_PAID"),
                lambda invoice_id: self.system.record_payment(invoice_id=invoice_id, amount="1.00"),
            ),
            "cancel": (
                ("DRAFT", "SENT", "PARTIALLY_PAID"),
                lambda invoice_id: self.system.cancel_invoice(invoice_id=invoice_id, reason="Testing"),
            ),
            "refund": (
                ("PAID",),
                lambda invoice_id: self.system.refund_invoice(invoice_id=invoice_id, reason="Testing"),
            ),
        }
        for status in ("DRAFT", "SENT", "PARTIALLY_PAID", "PAID", "CANCELLED", "REFUNDED"):
            invoice = self.invoice_in(status)
            self.assertEqual(invoice["status"], status)
            for name, (legal_from, operation) in operations.items():
                if status in legal_from:
                    continue
                with self.subTest(status=status, operation=name):
                    with self.assertRaises(IllegalStatusTransitionError):
                        operation(invoice["id"])
                    self.assertEqual(self.system.get_invoice(invoice["id"]), invoice)


class PaymentMethodTestCase(MarketplaceTestCase):
    def add_card(self, number: str, **kwargs) -> dict:
        return self.system.add_payment_method(
            account_id=self.account["id"],
            card_number=number,
            card_type="visa",
            expiry_month=kwargs.pop("expiry_month", 12),
            expiry_year=kwargs.pop("expiry_year", 2030),
            **kwargs,
        )

    def test_first_card_is_default_and_only_last_four_kept(self) -> None:
        first = self.add_card("4111111111111111")
        second = self.add_card("5500 0000 0000 0004")
        self.assertTrue(first["is_default"])
        self.assertFalse(second["is_default"])
        self.assertEqual(second["last_four"], "0004")
        self.assertNotIn("card_number", second)

    def test_switch_default_and_remove(self) -> None:
        first = self.add_card("4111111111111111")
        second = self.add_card("5500000000000004")
        self.system.set_default_payment_method(account_id=self.account["id"], payment_method_id=second["id"])
        methods = self.system.list_payment_methods(account_id=self.account["id"])
        self.assertEqual([method["id"] for method in methods], [second["id"], first["id"]])

        removed = self.system.remove_payment_method(second["id"])
        self.assertFalse(removed["is_active"])
        [remaining] = self.system.list_payment_methods(account_id=self.account["id"])
        self.assertEqual(remaining["id"], first["id"])
        self.assertTrue(remaining["is_default"])

    def test_rejects_bad_cards(self) -> None:
        with self.assertRaises(ValidationError):
            self.add_card("1234")
        with self.assertRaises(ValidationError):
            self.add_card("4111111111111111", expiry_month=13)
        with self.assertRaises(ValidationError):
            self.add_card("4111111111111111", expiry_month=1, expiry_year=2026)


class ZeroTotalInvoiceTestCase(MarketplaceTestCase):
    def test_fully_discounted_invoice_is_settled_on_send(self) -> None:
        self.system.create_platform_fee(value="0")
        booking = self.make_booking(price="20.00")
        self.system.create_coupon(
            coupon_code="FLAT30", discount_type="FIXED_AMOUNT", discount_value="30.00", expiry_date="2026-12-31"
        )
        self.system.apply_coupon(booking_id=booking["id"], account_id=self.account["id"], coupon_code="FLAT30")
        self.complete_booking(booking)
        invoice = self.system.get_invoice_for_booking(booking["id"])
        self.assertMoney(invoice["total"], "0.00")
        sent = self.system.send_invoice(invoice["id"])
        self.assertEqual(sent["status"], "PAID")


if __name__ == "__main__":
    unittest.main()
