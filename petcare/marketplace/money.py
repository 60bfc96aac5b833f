"""Decimal-exact arithmetic for invoices, platform fees and coupon discounts."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import InvalidAmountError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

PERCENTAGE = "PERCENTAGE"
FIXED_AMOUNT = "FIXED_AMOUNT"
DISCOUNT_TYPES = (PERCENTAGE, FIXED_AMOUNT)


@dataclass(frozen=True)
class InvoiceAmounts:
    subtotal: Decimal
    platform_fee: Decimal
    discount_amount: Decimal
    total: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "platform_fee": self.platform_fee,
            "discount_amount": self.discount_amount,
            "total": self.total,
        }


def to_decimal(value: Decimal | int | str | float, *, field: str = "amount") -> Decimal:
    """Coerce ``value`` into a ``Decimal`` without passing through binary floats."""

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise InvalidAmountError(f"{field} must be a number", details={"field": field})
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(
                f"{field} is not a valid amount", details={"field": field, "value": str(value)}
            ) from None
    if not result.is_finite():
        raise InvalidAmountError(f"{field} must be finite", details={"field": field})
    return result


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_platform_fee(subtotal: Decimal, fee_percentage: Decimal) -> Decimal:
    return quantize(subtotal * fee_percentage)


def compute_invoice_totals(subtotal, platform_fee, discount_amount=ZERO) -> InvoiceAmounts:
    """Combine already-known amounts into invoice totals.

    Used directly for fixed-amount fee schedules; the percentage path goes
    through :func:`compute_invoice_amounts`.
    """

    subtotal = to_decimal(subtotal, field="subtotal")
    platform_fee = to_decimal(platform_fee, field="platform_fee")
    discount_amount = to_decimal(discount_amount, field="discount_amount")
    if subtotal <= 0:
        raise InvalidAmountError("Subtotal must be greater than zero", details={"subtotal": str(subtotal)})
    if platform_fee < 0:
        raise InvalidAmountError("Platform fee cannot be negative", details={"platform_fee": str(platform_fee)})
    if discount_amount < 0:
        raise InvalidAmountError("Discount cannot be negative", details={"discount_amount": str(discount_amount)})
    gross = subtotal + platform_fee
    if discount_amount > gross:
        raise InvalidAmountError(
            "Discount exceeds subtotal plus platform fee",
            details={"discount_amount": str(discount_amount), "gross": str(gross)},
        )
    total = max(ZERO, gross - discount_amount)
    return InvoiceAmounts(
        subtotal=quantize(subtotal),
        platform_fee=quantize(platform_fee),
        discount_amount=quantize(discount_amount),
        total=quantize(total),
    )


def compute_invoice_amounts(
    booking_total_price, active_fee_percentage, discount_amount=ZERO
) -> InvoiceAmounts:
    """Derive subtotal, platform fee and total for a completed booking.

    ``active_fee_percentage`` is a fraction in ``[0, 1]`` (``0.10`` is ten
    percent). The fee is rounded half-up to cents before the discount is taken
    off, and the total never drops below zero.
    """

    subtotal = to_decimal(booking_total_price, field="booking_total_price")
    fee_percentage = to_decimal(active_fee_percentage, field="fee_percentage")
    if subtotal <= 0:
        raise InvalidAmountError(
            "Booking total price must be greater than zero",
            details={"booking_total_price": str(subtotal)},
        )
    if not ZERO <= fee_percentage <= 1:
        raise InvalidAmountError(
            "Fee percentage must be between 0 and 1",
            details={"fee_percentage": str(fee_percentage)},
        )
    platform_fee = compute_platform_fee(subtotal, fee_percentage)
    return compute_invoice_totals(subtotal, platform_fee, discount_amount)


def compute_coupon_discount(total_price, discount_type: str, discount_value) -> Decimal:
    """Return the discount a coupon grants against ``total_price``.

    Percentage coupons take ``discount_value`` percent of the price; fixed
    coupons are capped at the price so a booking never goes negative.
    """

    total_price = to_decimal(total_price, field="total_price")
    discount_value = to_decimal(discount_value, field="discount_value")
    if total_price < 0 or discount_value < 0:
        raise InvalidAmountError("Coupon amounts cannot be negative")
    if discount_type == PERCENTAGE:
        return min(quantize(total_price * discount_value / HUNDRED), quantize(total_price))
    if discount_type == FIXED_AMOUNT:
        return quantize(min(discount_value, total_price))
    raise InvalidAmountError(
        f"Unknown discount type {discount_type}", details={"discount_type": discount_type}
    )
