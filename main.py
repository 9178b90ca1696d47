import json
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError

from activation_engine import ActivationEngine, epoch_millis
from admin_registry import AdminRegistry
from config import configure_logging, load_durations, settings
from exceptions import (
    ClientError,
    KeyAlreadyExists,
    KeyNotFound,
    TransientStorageError,
    client_error_handler,
    storage_error_handler,
    validation_error_handler,
)
from key_store import KeyStore, create_key_store
from models import (
    AddKeyRequest,
    AdminActionResponse,
    HealthCheckResponse,
    KeyRecordResponse,
    RevokeKeyRequest,
    VerifyRequest,
    VerifyResponse,
)
from verification_service import ServiceStatus, VerificationService

logger = logging.getLogger(__name__)

_HTTP_STATUS = {
    ServiceStatus.MALFORMED_REQUEST: status.HTTP_400_BAD_REQUEST,
    ServiceStatus.ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def log_requests(request: Request, call_next):
    """Log one JSON line per request with its timing"""
    start_time = datetime.utcnow()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration = (datetime.utcnow() - start_time).total_seconds()
        logger.info(json.dumps({
            "timestamp": start_time.isoformat(),
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "duration": f"{duration:.3f}s",
            "client_ip": request.client.host if request.client else None,
        }))


def get_verification_service(request: Request) -> VerificationService:
    return request.app.state.verification_service


def get_admin_registry(request: Request) -> AdminRegistry:
    return request.app.state.admin_registry


def require_admin(request: Request, x_admin_token: str = Header(default="")):
    admin_token = request.app.state.admin_token
    # Header values arrive latin-1 decoded and may hold non-ASCII characters.
    if not admin_token or not secrets.compare_digest(x_admin_token.encode("utf-8"),
                                                     admin_token.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def create_app(
    key_store: Optional[KeyStore] = None,
    durations: Optional[Mapping[str, int]] = None,
    clock: Callable[[], int] = epoch_millis,
    admin_token: Optional[str] = None,
    sweep_interval_seconds: Optional[int] = None,
) -> FastAPI:
    durations = load_durations(settings.LICENSE_DURATIONS if durations is None else durations)
    store = key_store or create_key_store()
    engine = ActivationEngine(store, durations)

    if sweep_interval_seconds is None:
        sweep_interval_seconds = settings.SWEEP_INTERVAL_SECONDS
    registry = AdminRegistry(store, durations, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = BackgroundScheduler()
        if sweep_interval_seconds > 0:
            scheduler.add_job(
                registry.sweep,
                'interval',
                seconds=sweep_interval_seconds,
                id='expired_key_sweep',
            )
            scheduler.start()
        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown(wait=False)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="License key activation and device binding authority",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.key_store = store
    app.state.durations = durations
    app.state.verification_service = VerificationService(engine, clock)
    app.state.admin_registry = registry
    app.state.admin_token = settings.ADMIN_TOKEN if admin_token is None else admin_token

    app.middleware("http")(log_requests)

    app.add_exception_handler(ClientError, client_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(TransientStorageError, storage_error_handler)

    @app.post("/verify", response_model=VerifyResponse, response_model_exclude_none=True)
    def verify(
        body: VerifyRequest,
        response: Response,
        service: VerificationService = Depends(get_verification_service),
    ):
        """
        Confirm that a key may be used on a device.

        The first successful call binds the key to the device and fixes its
        expiry; later calls from the same device are idempotent.
        """
        result = service.verify(body.key, body.deviceId)
        response.status_code = _HTTP_STATUS.get(result.status, status.HTTP_200_OK)
        return result.to_payload()

    @app.post("/admin/add-key", response_model=AdminActionResponse,
              response_model_exclude_none=True, dependencies=[Depends(require_admin)])
    def add_key(
        body: AddKeyRequest,
        response: Response,
        registry: AdminRegistry = Depends(get_admin_registry),
    ):
        try:
            record = registry.issue(body.key, body.type)
        except KeyAlreadyExists as e:
            response.status_code = status.HTTP_409_CONFLICT
            return {"status": "error", "key": e.key, "error": "Key already exists"}
        except ClientError as e:
            response.status_code = status.HTTP_400_BAD_REQUEST
            return {"status": "error", "error": str(e)}
        return {"status": "added", "key": record.key}

    @app.post("/admin/revoke-key", response_model=AdminActionResponse,
              response_model_exclude_none=True, dependencies=[Depends(require_admin)])
    def revoke_key(
        body: RevokeKeyRequest,
        response: Response,
        registry: AdminRegistry = Depends(get_admin_registry),
    ):
        try:
            registry.revoke(body.key)
        except KeyNotFound as e:
            response.status_code = status.HTTP_404_NOT_FOUND
            return {"status": "error", "key": e.key, "error": "Key not found"}
        except ClientError as e:
            response.status_code = status.HTTP_400_BAD_REQUEST
            return {"status": "error", "error": str(e)}
        return {"status": "revoked", "key": body.key.strip()}

    @app.get("/admin/keys", response_model=List[KeyRecordResponse],
             dependencies=[Depends(require_admin)])
    def list_keys(registry: AdminRegistry = Depends(get_admin_registry)):
        """Every current key; expired bindings are purged first."""
        now = registry.clock()
        return [
            {
                "key": record.key,
                "type": record.license_type,
                "activatedAt": record.activated_at,
                "expiresAt": record.expires_at,
                "deviceId": record.device_id,
                "active": record.is_active(now),
            }
            for record in registry.list()
        ]

    @app.get("/health", response_model=HealthCheckResponse)
    def health_check():
        """Health check endpoint for container orchestration."""
        return {
            "status": "healthy",
            "service": "license-server",
            "version": settings.APP_VERSION,
            "backend": store.name,
            "licenseTypes": sorted(durations),
        }

    return app


def __getattr__(name):
    # `uvicorn main:app` builds the configured app on first access, not at import.
    if name == "app":
        app = create_app()
        globals()["app"] = app
        return app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(create_app(), host=settings.HOST, port=settings.PORT)
