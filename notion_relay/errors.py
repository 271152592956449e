from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for failures that are rendered as OpenAI-style error bodies."""

    status_code = 500
    error_type = "server_error"
    code: str | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response_body(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            },
        }


class RequestValidationError(RelayError):
    status_code = 400
    error_type = "invalid_request_error"


class UnsupportedModelError(RelayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_model"

    def __init__(self, requested_model: str, available_models: list[str]) -> None:
        super().__init__(
            f"Model '{requested_model}' is not supported. "
            f"Available models: {', '.join(available_models)}",
        )
        self.requested_model = requested_model
        self.available_models = available_models


class NotInitializedError(RelayError):
    code = "not_initialized"


class NoCredentialAvailable(RelayError):
    code = "no_credential_available"


class NoEgressAvailable(RelayError):
    code = "no_egress_available"


class UpstreamRejected(RelayError):
    status_code = 502
    error_type = "upstream_error"

    def __init__(self, upstream_status: int, detail: str = "") -> None:
        message = f"Upstream rejected the request with status {upstream_status}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.upstream_status = upstream_status
        self.code = f"upstream_{upstream_status}"


class UpstreamTransportFailure(RelayError):
    status_code = 502
    error_type = "upstream_connection_error"


class UpstreamParseError(ValueError):
    """A single upstream event could not be decoded. Never surfaced to clients."""
