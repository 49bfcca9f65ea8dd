"""Custom exceptions for the ordering backend."""

from typing import List, Optional


class OrderingError(Exception):
    """Base exception for all ordering errors."""

    def __init__(self, message: str = "", fields: Optional[List[str]] = None):
        self.fields: List[str] = list(fields or [])
        super().__init__(message)


class ValidationError(OrderingError):
    """Raised when input is malformed or semantically invalid."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message, fields)


class InvalidTransitionError(ValidationError):
    """Raised when a status change is not in the lifecycle graph."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from '{current}' to '{requested}'",
            fields=["status"],
        )


class NotFoundError(OrderingError):
    """Raised when a referenced record does not exist in the caller's tenant."""

    pass


class OrderNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class TenantNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Tenant not found: {ref}")


class ConflictError(OrderingError):
    """Raised when a concurrent modification is detected."""

    pass


class StatusConflictError(ConflictError):
    """Raised when the order status changed between read and update."""

    def __init__(self, order_ref: str, expected: str):
        self.order_ref = order_ref
        self.expected = expected
        super().__init__(
            f"Order {order_ref} was modified concurrently (expected status '{expected}'). Reload and retry."
        )


class OrderNumberConflictError(ConflictError):
    """Raised when an order number could not be allocated within the retry budget."""

    def __init__(self, tenant_id: str, attempts: int):
        self.tenant_id = tenant_id
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique order number after {attempts} attempts")


class DependencyError(OrderingError):
    """Raised when the document store is unreachable or times out."""

    def __init__(self, message: str = "Database unavailable"):
        super().__init__(message)


class InternalError(OrderingError):
    """Unanticipated failure. The message never carries internal detail."""

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)


class AuthenticationError(OrderingError):
    """Raised when credentials are missing or invalid."""

    pass


class AuthorizationError(OrderingError):
    """Raised when the authenticated user lacks the required role."""

    pass
