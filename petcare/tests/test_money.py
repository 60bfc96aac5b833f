import unittest
from decimal import Decimal

from petcare.marketplace.errors import InvalidAmountError
from petcare.marketplace.money import (
    FIXED_AMOUNT,
    PERCENTAGE,
    compute_coupon_discount,
    compute_invoice_amounts,
    compute_invoice_totals,
    to_decimal,
)


class InvoiceAmountsTestCase(unittest.TestCase):
    def test_ten_percent_fee_on_hundred(self) -> None:
        amounts = compute_invoice_amounts(Decimal("100.00"), Decimal("0.10"))
        self.assertEqual(amounts.subtotal, Decimal("100.00"))
        self.assertEqual(amounts.platform_fee, Decimal("10.00"))
        self.assertEqual(amounts.discount_amount, Decimal("0.00"))
        self.assertEqual(amounts.total, Decimal("110.00"))

    def test_fee_rounds_half_up(self) -> None:
        # 0.125 * 33.00 = 4.125
        amounts = compute_invoice_amounts("33.00", "0.125")
        self.assertEqual(amounts.platform_fee, Decimal("4.13"))
        self.assertEqual(amounts.total, Decimal("37.13"))

    def test_discount_is_taken_after_fee(self) -> None:
        amounts = compute_invoice_amounts("50.00", "0.10", "10.00")
        self.assertEqual(amounts.platform_fee, Decimal("5.00"))
        self.assertEqual(amounts.total, Decimal("45.00"))

    def test_total_is_zero_when_discount_covers_everything(self) -> None:
        amounts = compute_invoice_amounts("20.00", "0", "20.00")
        self.assertEqual(amounts.total, Decimal("0.00"))

    def test_floats_are_not_binary_approximations(self) -> None:
        amounts = compute_invoice_amounts(0.1, 0.5)
        self.assertEqual(amounts.subtotal, Decimal("0.10"))
        self.assertEqual(amounts.platform_fee, Decimal("0.05"))

    def test_rejects_non_positive_subtotal(self) -> None:
        for value in ("0", "-5.00"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmountError):
                    compute_invoice_amounts(value, "0.10")

    def test_rejects_fee_outside_unit_interval(self) -> None:
        for value in ("-0.01", "1.01", "10"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmountError):
                    compute_invoice_amounts("100.00", value)

    def test_rejects_discount_larger_than_gross(self) -> None:
        with self.assertRaises(InvalidAmountError):
            compute_invoice_totals("10.00", "1.00", "11.01")

    def test_fixed_fee_totals(self) -> None:
        amounts = compute_invoice_totals("80.00", "2.50", "5.00")
        self.assertEqual(amounts.total, Decimal("77.50"))
        self.assertEqual(
            amounts.as_dict(),
            {
                "subtotal": Decimal("80.00"),
                "platform_fee": Decimal("2.50"),
                "discount_amount": Decimal("5.00"),
                "total": Decimal("77.50"),
            },
        )


class CouponDiscountTestCase(unittest.TestCase):
    def test_percentage(self) -> None:
        self.assertEqual(compute_coupon_discount("50.00", PERCENTAGE, "20"), Decimal("10.00"))

    def test_percentage_rounds_half_up(self) -> None:
        # 15% of 12.30 = 1.845
        self.assertEqual(compute_coupon_discount("12.30", PERCENTAGE, "15"), Decimal("1.85"))

    def test_fixed_amount_is_clamped_to_price(self) -> None:
        self.assertEqual(compute_coupon_discount("20.00", FIXED_AMOUNT, "30.00"), Decimal("20.00"))
        self.assertEqual(compute_coupon_discount("45.00", FIXED_AMOUNT, "30.00"), Decimal("30.00"))

    def test_unknown_type(self) -> None:
        with self.assertRaises(InvalidAmountError):
            compute_coupon_discount("20.00", "BOGO", "1")


class ToDecimalTestCase(unittest.TestCase):
    def test_rejects_garbage(self) -> None:
        for value in ("abc", True, "NaN", "Infinity"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmountError):
                    to_decimal(value)

    def test_accepts_strings_and_ints(self) -> None:
        self.assertEqual(to_decimal(" 12.5 "), Decimal("12.5"))
        self.assertEqual(to_decimal(3), Decimal("3"))


if __name__ == "__main__":
    unittest.main()
