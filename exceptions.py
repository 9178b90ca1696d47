from datetime import datetime
from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class LicenseServiceError(Exception):
    """Base exception for the license authority and its client"""


class ClientError(LicenseServiceError):
    """Malformed input from the caller. Never retried."""


class UnknownLicenseType(ClientError):
    def __init__(self, license_type: str):
        super().__init__(f"Unknown license type: {license_type}")
        self.license_type = license_type


class TransientStorageError(LicenseServiceError):
    """Backend timeout or outage. Safe to retry, state is left untouched."""


class StorageUnavailable(TransientStorageError):
    pass


class LicenseConfigurationError(LicenseServiceError):
    """A stored license type has no configured duration."""


class KeyAlreadyExists(LicenseServiceError):
    def __init__(self, key: str):
        super().__init__(f"Key already exists: {key}")
        self.key = key


class KeyNotFound(LicenseServiceError):
    def __init__(self, key: str):
        super().__init__(f"Key not found: {key}")
        self.key = key


class ProtocolError(LicenseServiceError):
    """The license server answered with something we cannot interpret."""


class LicenseLockedError(LicenseServiceError):
    def __init__(self, reason: Optional[str] = None):
        super().__init__(f"License locked: {reason or 'no valid license'}")
        self.reason = reason


def _error_body(request: Request, status_value: str, detail: str) -> dict:
    return {
        "status": status_value,
        "error": detail,
        "timestamp": datetime.utcnow().isoformat(),
        "path": request.url.path,
    }


async def client_error_handler(request: Request, exc: ClientError):
    """Handler for malformed requests"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, "malformed_request", str(exc)),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Pydantic rejections are reported like any other malformed request"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, "malformed_request", "Request body could not be parsed"),
    )


async def storage_error_handler(request: Request, exc: TransientStorageError):
    """Handler for backend outages; clients must retry, never lock out"""
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(request, "error", "Storage temporarily unavailable"),
    )
