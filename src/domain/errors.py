from __future__ import annotations


class MailFulfillmentError(Exception):
    """Base class for fulfillment domain failures."""

    category = "terminal"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class InvalidTransition(MailFulfillmentError):
    def __init__(self, mail_piece_id: str, current: str | None, target: str, reason: str | None = None):
        self.mail_piece_id = mail_piece_id
        self.current = current
        self.target = target
        self.reason = reason or "transition not allowed"
        super().__init__(f"Invalid transition {current} -> {target} for mail piece {mail_piece_id}: {self.reason}")


class UnknownMailPiece(MailFulfillmentError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Mail piece not found: {reference}")


class TransitionConflict(MailFulfillmentError):
    """Compare-and-swap kept losing to concurrent writers."""

    category = "transient"

    def __init__(self, mail_piece_id: str, target: str, attempts: int):
        self.mail_piece_id = mail_piece_id
        self.target = target
        self.attempts = attempts
        super().__init__(f"Transition to {target} for mail piece {mail_piece_id} lost {attempts} races")


class PaymentRequestError(MailFulfillmentError):
    """Permanent gateway rejection (bad request, auth, card declined)."""


class PaymentGatewayUnavailable(MailFulfillmentError):
    category = "transient"


class AmbiguousExternalOutcome(MailFulfillmentError):
    """The external call may or may not have taken effect."""

    category = "unknown"

    def __init__(self, operation: str, detail: str, *, provider: str = "lob"):
        self.operation = operation
        self.provider = provider
        super().__init__(f"Ambiguous outcome for {operation}: {detail}")


class CarrierSubmissionError(MailFulfillmentError):
    """Carrier permanently rejected the submission."""


class CarrierUnavailable(MailFulfillmentError):
    """Carrier could not be reached, nothing was submitted."""

    category = "transient"
