"""Error taxonomy shared by the ingestion path and the control path.

Ingestion errors are caught and logged where they happen. Control-path
errors propagate to the API layer, which maps them to HTTP responses via
``register_exception_handlers``.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

log = logging.getLogger(__name__)


class SmartHomeError(Exception):
    status_code = 500
    public_message = "Server error"


class TelemetryValidationError(SmartHomeError):
    status_code = 422
    public_message = "Invalid telemetry"


class DeviceNotFound(SmartHomeError):
    # covers both "missing" and "owned by someone else"
    status_code = 404
    public_message = "Device not found"


class BusUnavailable(SmartHomeError):
    status_code = 503
    public_message = "Message bus not connected"


class PublishFailure(SmartHomeError):
    status_code = 502
    public_message = "Control command could not be published"


class PublishTimeout(PublishFailure):
    status_code = 504
    public_message = "Timed out publishing control command"


class StorageUnavailable(SmartHomeError):
    status_code = 500
    public_message = "Server error"


async def _smarthome_error_handler(request: Request, exc: SmartHomeError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SmartHomeError, _smarthome_error_handler)
