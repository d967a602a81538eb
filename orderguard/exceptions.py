"""
Error taxonomy for the order-integrity core.

Each error carries the HTTP status the webhook/internal routes answer with.
Services raise these; routes translate them into responses.
"""
from typing import Optional


class OrderGuardError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class WebhookValidationError(OrderGuardError):
    """Bad or missing signature, malformed event. Never retried."""
    status_code = 400


class PayloadTooLargeError(WebhookValidationError):
    status_code = 413

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload too large: {size} bytes (limit {limit})")


class RateLimitedError(OrderGuardError):
    """Caller exceeded its request quota. Not persisted."""
    status_code = 429

    def __init__(self, identity: str, retry_after: int):
        self.identity = identity
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded")


class TransientDependencyError(OrderGuardError):
    """Database or provider unreachable, or a guarded call timed out."""
    status_code = 500
    retryable = True


class CircuitOpenError(TransientDependencyError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Circuit breaker OPEN for operation: {operation}")


class WebhookProcessingError(TransientDependencyError):
    """A handler failed; the provider's redelivery drives the next attempt."""

    def __init__(self, event_id: str, retry_count: int, cause: str):
        self.event_id = event_id
        self.retry_count = retry_count
        super().__init__(f"Webhook {event_id} failed (attempt {retry_count}): {cause}")


class PreconditionViolation(OrderGuardError):
    """The caller asked for something whose prerequisite does not exist."""
    status_code = 404


class OrderNotFoundError(PreconditionViolation):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class BenchmarkNotFoundError(PreconditionViolation):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("No benchmark found for this order")


class ConcurrencyConflict(OrderGuardError):
    """Another writer holds the resource. Try later, never force through."""
    status_code = 409
    retryable = True


class LockNotAcquiredError(ConcurrencyConflict):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Could not acquire lock for order {order_id[:8]}***")
