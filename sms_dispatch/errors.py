"""
Error taxonomy for the dispatch engine.

Every error carries a ``retryable`` flag; the worker pool consults it to
decide between scheduling a backoff retry and failing the job outright.
"""

from typing import Any


class SmsDispatchError(Exception):
    """Base exception for SMS dispatch errors."""

    retryable: bool = True

    def __init__(self, message: str, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ValidationError(SmsDispatchError):
    """Malformed recipient or empty body. Retrying cannot change the outcome."""

    retryable = False

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, retryable=False)
        self.field = field


class AdmissionRejectedError(SmsDispatchError):
    """Raised when the admission controller rejects a request for an identifier."""

    retryable = False

    def __init__(self, message: str, decision: Any):
        super().__init__(message, retryable=False)
        self.decision = decision

    @property
    def retry_after_seconds(self) -> int:
        return self.decision.retry_after_seconds()


class GatewayError(SmsDispatchError):
    """The SMS gateway rejected the message or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict | None = None,
        retryable: bool = True,
    ):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code
        self.response_data = response_data or {}


class StoreUnavailableError(SmsDispatchError):
    """The durable store could not complete an operation."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message, retryable=True)
        self.operation = operation
