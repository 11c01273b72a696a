from __future__ import annotations


class RemindRelayError(Exception):
    """Base error for remindrelay."""


class GatewayConfigError(RemindRelayError):
    """Missing or invalid messaging gateway configuration."""


class JobConflictError(RemindRelayError):
    """Owner already has a non-terminal delivery job."""

    def __init__(self, owner_id: str, existing_job_id: str | None = None) -> None:
        super().__init__(f"owner {owner_id} already has an active delivery job")
        self.owner_id = owner_id
        self.existing_job_id = existing_job_id


class JobNotFoundError(RemindRelayError):
    """Delivery job id is unknown."""


class JobStateError(RemindRelayError):
    """Requested control transition is not allowed from the job's current status."""

    def __init__(self, job_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} job {job_id} in status {status}")
        self.job_id = job_id
        self.status = status
        self.action = action


class DeliveryError(RemindRelayError):
    """Gateway delivery failure carrying the last diagnostic."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Gateway unreachable, timed out, or answered 5xx on every variant."""


class FormatRejectedError(DeliveryError):
    """Gateway rejected every address variant as malformed (HTTP 400)."""


class TerminalDeliveryError(DeliveryError):
    """Gateway refused the message; retrying the same request will not help."""


class BreakerOpenError(RemindRelayError):
    """Circuit is open; the message was deflected to the pending queue."""

    def __init__(self, owner_id: str, queued_message_id: str | None = None) -> None:
        super().__init__(f"circuit open for owner {owner_id}")
        self.owner_id = owner_id
        self.queued_message_id = queued_message_id


class EngineFaultError(RemindRelayError):
    """Unexpected failure inside a job loop; the job is force-cancelled."""
