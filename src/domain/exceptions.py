class BookingDomainError(Exception):
    """
    Base exception for all domain-level errors
    inside the Pizza Trophy booking service.

    ``public_message`` is what competitors see; ``str(exc)`` carries the
    full detail and is only shown on admin routes.
    """

    status_code = 400
    public_message = "The request could not be processed."

    def __init__(self, message: str | None = None, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(BookingDomainError):
    """Raised when request fields are malformed or missing."""

    status_code = 422
    public_message = "Invalid request."


class NotFoundError(BookingDomainError):
    status_code = 404
    public_message = "Resource not found."


class SlotUnavailableError(BookingDomainError):
    """Raised when at least one slot of a batch cannot be claimed."""

    status_code = 409
    public_message = "One or more selected slots are no longer available."

    def __init__(self, slot_ids: list[str], reason: str = "not available"):
        self.slot_ids = list(slot_ids)
        super().__init__(
            f"Slots {', '.join(self.slot_ids)} are {reason}"
        )


class ProductMismatchError(BookingDomainError):
    status_code = 422
    public_message = "The selected slots do not match the chosen pack."


class EventLockedError(BookingDomainError):
    """Raised when the event lifecycle status forbids the operation."""

    status_code = 409
    public_message = "Registrations for this event are closed."


class ProtectedStateError(BookingDomainError):
    """Raised when a paid or otherwise referenced slot would be deleted or released."""

    status_code = 409
    public_message = "Paid slots cannot be modified this way."

    def __init__(self, slot_ids: list[str], action: str = "modified", subject: str = "Paid slots"):
        self.slot_ids = list(slot_ids)
        super().__init__(
            f"{subject} cannot be {action}: {', '.join(self.slot_ids)}"
        )


class UpstreamGatewayError(BookingDomainError):
    status_code = 502
    public_message = "The payment provider is unavailable. Please try again."


class SignatureVerificationError(BookingDomainError):
    status_code = 400
    public_message = "Invalid webhook signature."


class VoucherError(BookingDomainError):
    status_code = 409
    public_message = "This voucher cannot be redeemed."


class InvalidStateTransitionError(BookingDomainError):
    """
    Raised when an illegal slot state transition is attempted.
    """

    status_code = 409
    public_message = "This slot cannot be changed right now."

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class InUseError(BookingDomainError):
    """Raised when a record is still referenced and cannot be removed."""

    status_code = 409
    public_message = "This item is still in use."


class PermissionDeniedError(BookingDomainError):
    status_code = 403
    public_message = "You are not allowed to perform this action."


class WebhookOutOfOrderError(BookingDomainError):
    """
    Raised when a gateway event refers to a payment not known yet. The
    delivery is left out of the dedupe ledger and answered with an error so
    the gateway retries it after the payment arrives.
    """

    status_code = 409
    public_message = "Event refers to a payment that is not recorded yet."
