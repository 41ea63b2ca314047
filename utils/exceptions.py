"""Typed errors raised by the Rift escrow core"""

from typing import Optional


class RiftError(Exception):
    """Base class for domain errors surfaced to callers"""

    retryable = False


class InvalidTransition(RiftError):
    """Requested operation is not allowed from the transaction's current status"""

    def __init__(self, current_status: str, requested: str, message: Optional[str] = None):
        self.current_status = current_status
        self.requested = requested
        super().__init__(
            message or f"Cannot {requested} while transaction is {current_status}"
        )


class ConflictError(InvalidTransition):
    """A concurrent writer changed the transaction first"""

    def __init__(self, expected_status: str, current_status: str, requested: str):
        self.expected_status = expected_status
        super().__init__(
            current_status,
            requested,
            f"Cannot {requested}: transaction changed from {expected_status} "
            f"to {current_status} before this request committed",
        )


class Unauthorized(RiftError):
    """Actor lacks the role or party membership the operation requires"""


class ValidationError(RiftError):
    """Malformed amount, currency, or artifact"""


class NotFoundError(RiftError):
    pass


class ExternalServiceUnavailable(RiftError):
    """Payment, storage, scoring, or identity call failed or timed out"""

    def __init__(self, service: str, detail: str = "", retryable: bool = True):
        self.service = service
        self.retryable = retryable
        super().__init__(f"{service} unavailable{': ' + detail if detail else ''}")
