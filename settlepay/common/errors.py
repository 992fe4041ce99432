"""Error taxonomy shared by every settlement component.

Each class carries a stable machine-readable `code` and the HTTP status the
API layer answers with. Adapters only ever raise `GatewayError` past their
boundary.
"""


class SettlePayError(Exception):
    """Base class for all business errors surfaced to callers."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(SettlePayError):
    """Malformed or out-of-range request; never sent to a provider."""

    code = "VALIDATION_ERROR"
    http_status = 422


class IdempotencyConflict(ValidationError):
    """Idempotency key reused with different request parameters."""

    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409


class AmountOutOfRange(SettlePayError):
    code = "AMOUNT_OUT_OF_RANGE"
    http_status = 422


class NoGatewayAvailable(SettlePayError):
    code = "NO_GATEWAY_AVAILABLE"
    http_status = 422


class GatewayError(SettlePayError):
    """Provider call failed.

    `transient` marks failures worth retrying for idempotent reads; `ambiguous`
    marks create calls that may have succeeded on the provider side.
    """

    code = "GATEWAY_ERROR"
    http_status = 502

    def __init__(
        self,
        gateway: str,
        message: str,
        transient: bool = False,
        ambiguous: bool = False,
        provider_code: str | None = None,
    ) -> None:
        super().__init__(f"{gateway}: {message}")
        self.gateway = gateway
        self.transient = transient
        self.ambiguous = ambiguous
        self.provider_code = provider_code


class QuoteExpired(SettlePayError):
    code = "QUOTE_EXPIRED"
    http_status = 409


class SignatureInvalid(SettlePayError):
    code = "SIGNATURE_INVALID"
    http_status = 400


class PayloadInvalid(SettlePayError):
    code = "PAYLOAD_INVALID"
    http_status = 400


class DuplicateEvent(SettlePayError):
    """Webhook event already applied; acknowledged without mutation."""

    code = "DUPLICATE_EVENT"
    http_status = 200


class InvalidStateTransition(SettlePayError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"invalid transition: {current} -> {target}")
        self.current = current
        self.target = target


class InsufficientBalance(SettlePayError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 422


class NotFound(SettlePayError):
    code = "NOT_FOUND"
    http_status = 404


class CancellationNotSupported(SettlePayError):
    code = "CANCELLATION_NOT_SUPPORTED"
    http_status = 409
