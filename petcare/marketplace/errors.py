"""Error taxonomy shared by the marketplace facade and the web layer."""

from __future__ import annotations

from typing import Any


class MarketplaceError(RuntimeError):
    """Base class for every error the marketplace raises on purpose.

    ``status_code`` is the HTTP status the web layer answers with and ``code`` a
    stable machine readable identifier.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# ----------------------------------------------------------------------
# Not found
# ----------------------------------------------------------------------
class NotFoundError(MarketplaceError):
    status_code = 404
    code = "not_found"


class BookingNotFoundError(NotFoundError):
    code = "booking_not_found"


class InvoiceNotFoundError(NotFoundError):
    code = "invoice_not_found"


class CouponNotFoundError(NotFoundError):
    code = "coupon_not_found"


class NoActiveFeeError(NotFoundError):
    code = "no_active_fee"


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
class ValidationError(MarketplaceError):
    """Raised when incoming data fails validation."""

    status_code = 400
    code = "validation_error"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


# ----------------------------------------------------------------------
# Conflict
# ----------------------------------------------------------------------
class ConflictError(MarketplaceError):
    status_code = 409
    code = "conflict"


class DuplicateInvoiceError(ConflictError):
    code = "duplicate_invoice"


class CouponAlreadyAppliedError(ConflictError):
    code = "coupon_already_applied"


class IllegalStatusTransitionError(ConflictError):
    code = "illegal_status_transition"

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} cannot move from {current} to {target}",
            details={"entity": entity, "from": current, "to": target},
        )
        self.current = current
        self.target = target


# ----------------------------------------------------------------------
# Business rules
# ----------------------------------------------------------------------
class BusinessRuleError(MarketplaceError):
    status_code = 422
    code = "business_rule_violation"


class CouponNotEligibleError(BusinessRuleError):
    code = "coupon_not_eligible"

    REASONS = ("inactive", "expired", "exhausted")

    def __init__(self, coupon_code: str, reason: str) -> None:
        super().__init__(
            f"Coupon {coupon_code} is not eligible: {reason}",
            details={"coupon_code": coupon_code, "reason": reason},
        )
        self.reason = reason


class BookingNotCompletedError(BusinessRuleError):
    code = "booking_not_completed"


class BookingClosedError(BusinessRuleError):
    code = "booking_closed"


# ----------------------------------------------------------------------
# Authorization
# ----------------------------------------------------------------------
class AuthenticationError(MarketplaceError):
    status_code = 401
    code = "authentication_failed"


class AuthorizationError(MarketplaceError):
    """Raised when a user action is not permitted."""

    status_code = 403
    code = "forbidden"


# ----------------------------------------------------------------------
# Downstream collaborators
# ----------------------------------------------------------------------
class DownstreamError(MarketplaceError):
    status_code = 500
    code = "downstream_failure"


class PdfRenderError(DownstreamError):
    code = "pdf_render_failed"
