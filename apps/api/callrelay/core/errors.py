"""Typed failures surfaced by the call control plane."""
from __future__ import annotations


class CallControlError(RuntimeError):
    """Base error carrying the HTTP status and machine code shown to clients."""

    status_code = 500
    code = "internal_error"
    default_message = "Call control failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ProviderUnavailableError(CallControlError):
    """The voice provider could not be reached or answered with a 5xx."""

    status_code = 502
    code = "provider_unavailable"
    default_message = "Voice provider is unavailable"


class InvalidDestinationError(CallControlError):
    status_code = 422
    code = "invalid_destination"
    default_message = "Destination phone number is invalid"


class CallValidationError(CallControlError):
    status_code = 400
    code = "validation_error"
    default_message = "Request is missing required fields"


class NotFoundError(CallControlError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class ControlEndpointGoneError(CallControlError):
    """The call already ended; retrying will never succeed."""

    status_code = 410
    code = "call_already_ended"
    default_message = "Call already ended"


class ControlEndpointUnavailableError(CallControlError):
    """Transient failure reaching the control endpoint, after the single retry."""

    status_code = 503
    code = "control_retry_exhausted"
    default_message = "Could not reach the call, please retry"


class NoControlEndpointError(CallControlError):
    """Endpoint resolution never completed for this call."""

    status_code = 409
    code = "call_never_connected"
    default_message = "Call never connected"


class CommandSupersededError(CallControlError):
    status_code = 409
    code = "command_superseded"
    default_message = "A newer command replaced this one before the call connected"


class CallAlreadyAnsweredError(CallControlError):
    """Another agent claimed the inbound call first."""

    status_code = 409
    code = "call_already_answered"
    default_message = "Call was already answered by another agent"
