"""Exception types shared by the webhook, directory and dispatch layers."""


class Unauthorized(Exception):
    """The webhook's shared-secret header is missing or does not match."""


class MalformedPayload(Exception):
    """A supported event type arrived with a body we cannot interpret."""

    def __init__(self, event_type: str, reason: str) -> None:
        super().__init__(f"{event_type}: {reason}")
        self.event_type = event_type
        self.reason = reason


class TransientError(Exception):
    """The remote service is unavailable right now; the call may be retried."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(Exception):
    """The remote service rejected the request for a reason retrying won't fix."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeliveryFailed(Exception):
    """A dispatch task reached a terminal failure."""

    def __init__(self, change_identifier: str, recipient_account_id: str, cause: Exception) -> None:
        super().__init__(
            f"delivery failed for {change_identifier} to {recipient_account_id}: {cause}"
        )
        self.change_identifier = change_identifier
        self.recipient_account_id = recipient_account_id
        self.cause = cause
