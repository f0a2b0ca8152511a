"""
Error kinds raised by the ingest path and the device registry.

Each kind carries the HTTP status it maps to; the app registers a single
handler that renders them as ``{"message": ..., "errors"?: [...]}``.
"""
from typing import Any


class TelemetryError(Exception):
    status_code = 500
    default_message = "Error processing request"

    def __init__(self, message: str | None = None, errors: list[Any] | None = None) -> None:
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.errors is not None:
            body["errors"] = self.errors
        return body


class InvalidInput(TelemetryError):
    status_code = 400
    default_message = "Invalid request body"


class NotFound(TelemetryError):
    status_code = 404
    default_message = "Device not found"


class Unauthorized(TelemetryError):
    status_code = 401
    default_message = "Invalid API Key"


class StorageError(TelemetryError):
    status_code = 500
    default_message = "Error processing request"
