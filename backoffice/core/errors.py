from typing import Any


class CampaignError(Exception):
    """Base class for campaign engine errors rendered through the API error envelope."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CampaignError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: str | None = None):
        message = f"{resource} not found" if resource_id is None else f"{resource} '{resource_id}' not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class InvalidStateError(CampaignError):
    status_code = 409
    code = "invalid_state"

    def __init__(self, message: str, *, current_status: str, operation: str):
        super().__init__(
            message,
            details=[{"field": "status", "message": f"Operation '{operation}' denied", "type": current_status}],
        )
        self.current_status = current_status
        self.operation = operation


class InvalidTransitionError(CampaignError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current_status: str, target_status: str, allowed: list[str]):
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Invalid transition: '{current_status}' -> '{target_status}'. Allowed: {allowed_text}",
            details=[{"field": "status", "message": f"Allowed: {allowed_text}", "type": "invalid_transition"}],
        )
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = allowed


class ValidationError(CampaignError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, details: list[dict[str, Any]] | None = None):
        if details is None and field is not None:
            details = [{"field": field, "message": message, "type": "value_error"}]
        super().__init__(message, details=details)
        self.field = field


class BatchSetupError(CampaignError):
    status_code = 409
    code = "batch_setup_failed"

    def __init__(self, message: str, *, batch_id: str | None = None):
        super().__init__(
            message,
            details=[{"field": "batch_id", "message": message, "type": batch_id}] if batch_id else None,
        )
        self.batch_id = batch_id


class AssetJobError(CampaignError):
    status_code = 502
    code = "asset_job_error"

    # Upstream auth failures are about our workflow credentials, not the caller's session.
    _GATEWAY_STATUSES = frozenset({401, 403, 407})

    def __init__(self, message: str, *, upstream_status: int | None = None):
        details = None
        if upstream_status is not None:
            details = [{"field": "upstream_status", "message": message, "type": str(upstream_status)}]
        super().__init__(message, details=details)
        self.upstream_status = upstream_status
        if (
            upstream_status is not None
            and 400 <= upstream_status < 500
            and upstream_status not in self._GATEWAY_STATUSES
        ):
            self.status_code = upstream_status


class DispatchError(Exception):
    """A single recipient could not be delivered; recorded on the recipient row."""
