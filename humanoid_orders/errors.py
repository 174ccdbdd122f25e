class PaymentEngineError(Exception):
    """Base for every error the order/payment engine raises on purpose."""

    code = "payment_engine_error"
    status_code = 500
    retryable = False
    public_message = "The request could not be completed."

    def __init__(self, message: str = None, **context):
        super().__init__(message or self.public_message)
        self.context = context


# Validation


class InvalidRequest(PaymentEngineError):
    code = "invalid_request"
    status_code = 400
    public_message = "Invalid payment request."


class AmountExceedsCaptured(InvalidRequest):
    code = "amount_exceeds_captured"
    status_code = 422
    public_message = "Refund amount exceeds the captured amount."


# Transient


class ProviderUnavailable(PaymentEngineError):
    code = "provider_unavailable"
    status_code = 503
    retryable = True
    public_message = "Payment provider is temporarily unavailable, please retry."


# Security


class InvalidSignature(PaymentEngineError):
    code = "invalid_signature"
    status_code = 401
    public_message = "Invalid signature"


# Lookups


class OrderNotFound(PaymentEngineError):
    code = "order_not_found"
    status_code = 404
    public_message = "Order not found."


class IntentNotFound(PaymentEngineError):
    code = "intent_not_found"
    status_code = 404
    public_message = "Payment not found."


class ConflictNotFound(PaymentEngineError):
    code = "conflict_not_found"
    status_code = 404
    public_message = "Conflict not found."


# State conflicts


class StateConflict(PaymentEngineError):
    status_code = 409
    public_message = "The order cannot be updated right now."


class OrderNotPayable(StateConflict):
    code = "order_not_payable"
    public_message = "This order cannot be paid."


class OrderNotRefundable(StateConflict):
    code = "order_not_refundable"
    public_message = "This order cannot be refunded."


class AlreadyRefunded(StateConflict):
    code = "already_refunded"
    public_message = "This payment has already been refunded."


class ActiveIntentExists(StateConflict):
    code = "active_intent_exists"

    def __init__(self, message: str = None, intent_id: str = None, **context):
        super().__init__(message, intent_id=intent_id, **context)
        self.intent_id = intent_id


class InvalidTransition(StateConflict):
    code = "invalid_transition"

    def __init__(self, current, event, order_id: str = None):
        current = getattr(current, "value", current)
        event = getattr(event, "value", event)
        super().__init__(
            f"{event} is not allowed from {current}",
            order_id=order_id,
            current=current,
            event=event,
        )
        self.order_id = order_id
        self.current = current
        self.event = event


class DuplicateSuccess(StateConflict):
    code = "duplicate_success"


class IllegalIntentStatus(StateConflict):
    code = "illegal_intent_status"


# Throttling


class RateLimited(PaymentEngineError):
    code = "rate_limited"
    status_code = 429
    retryable = True
    public_message = "Too many requests, please wait."
