"""
Billing Exceptions

Every error the HTTP layer can surface derives from BillingError, which
carries its own status code and renders to a JSON body.
"""


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    Subclasses set `status_code` and `code`; the message defaults to
    `default_message` when none is given.
    """

    status_code = 400
    code = "BILLING_ERROR"
    default_message = "Billing error"

    def __init__(self, message: str = None, details: dict = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        body = {'error': self.message, 'code': self.code}
        if self.details:
            body['details'] = self.details
        return body


class Unauthorized(BillingError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class Forbidden(BillingError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class InvalidRequest(BillingError):
    status_code = 400
    code = "INVALID_REQUEST"
    default_message = "Invalid request"


class InvalidSignature(BillingError):
    """Webhook signature mismatch. The sender is untrusted; nothing is written."""

    status_code = 400
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class MissingMetadata(BillingError):
    """
    A recognised event lacks the metadata needed to settle it.

    Answered with a non-2xx status so Stripe redelivers the event later.
    """

    status_code = 400
    code = "MISSING_METADATA"
    default_message = "Missing required metadata"


class InvalidAmount(BillingError):
    status_code = 400
    code = "INVALID_AMOUNT"
    default_message = "Invalid amount"


class NotFound(BillingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class InsufficientPages(BillingError):
    """
    Raised when a user doesn't have enough pages for a conversion.

    Attributes:
        required: Pages required for the operation
        available: Pages currently available
    """

    status_code = 402
    code = "INSUFFICIENT_PAGES"
    default_message = "Not enough pages remaining"

    def __init__(self, required: int = 0, available: int = 0, message: str = None):
        super().__init__(
            message=message,
            details={
                'required': required,
                'available': available,
                'shortfall': max(0, required - available),
            }
        )
        self.required = required
        self.available = available


class TransactionConflict(BillingError):
    """Concurrent writers collided on the same user's documents."""

    status_code = 409
    code = "TRANSACTION_CONFLICT"
    default_message = "Concurrent update, please retry"


class CheckoutFailed(BillingError):
    status_code = 502
    code = "CHECKOUT_FAILED"
    default_message = "Failed to start checkout"


class OcrError(BillingError):
    status_code = 502
    code = "OCR_FAILED"
    default_message = "Document conversion failed"
