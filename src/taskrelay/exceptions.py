"""Library exceptions for the taskrelay package."""


class TaskRelayError(Exception):
    """Base exception for taskrelay library."""

    pass


class ValidationFailedError(TaskRelayError):
    """Raised when mutation input fails validation.

    Carries field-level messages so callers can surface them as a 4xx body.
    """

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        details = ", ".join(f"{field}: {message}" for field, message in errors.items())
        super().__init__(f"Validation failed: {details}")


class TaskNotFoundError(TaskRelayError):
    """Raised when a task does not exist or belongs to another owner."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class UnauthenticatedError(TaskRelayError):
    """Raised when an operation is attempted without a verified identity."""

    def __init__(self, message: str = "Missing or invalid identity") -> None:
        super().__init__(message)


class StoreError(TaskRelayError):
    """Raised when there's an error in a task or notification store."""

    pass


class BrokerError(TaskRelayError):
    """Raised when there's an error talking to the message broker."""

    pass


class BrokerUnavailableError(BrokerError):
    """Raised when the connect budget is exhausted without reaching the broker."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        reason = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Broker unavailable after {attempts} connect attempts{reason}")


class TopologyError(BrokerError):
    """Raised when exchanges, queues or bindings cannot be asserted.

    A topology failure during connect counts as a failed connect attempt.
    """

    pass


class EventPublishError(BrokerError):
    """Raised by the mutation path when a publish fails under the RAISE policy."""

    def __init__(self, routing_key: str, reason: str) -> None:
        self.routing_key = routing_key
        self.reason = reason
        super().__init__(f"Failed to publish {routing_key}: {reason}")


class NonRetryableMessageError(TaskRelayError):
    """Raised by a consumer callback for messages that can never succeed.

    The consumer dead-letters such messages without spending retries.
    """

    pass


class EnvelopeDecodeError(NonRetryableMessageError):
    """Raised when an incoming message body cannot be decoded into an envelope."""

    def __init__(self, message_id: str | None, reason: str) -> None:
        self.message_id = message_id
        super().__init__(f"Cannot decode message {message_id or '<no id>'}: {reason}")


class CacheBackendError(TaskRelayError):
    """Raised by cache backends on I/O failure. Never escapes the read-through cache."""

    pass


__all__ = [
    "TaskRelayError",
    "ValidationFailedError",
    "TaskNotFoundError",
    "UnauthenticatedError",
    "StoreError",
    "BrokerError",
    "BrokerUnavailableError",
    "TopologyError",
    "EventPublishError",
    "NonRetryableMessageError",
    "EnvelopeDecodeError",
    "CacheBackendError",
]
