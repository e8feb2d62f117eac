import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.doses import router as doses_router
from .api.health import router as health_router
from .api.medications import router as medications_router
from .api.preferences import router as preferences_router
from .api.safety import router as safety_router
from .config import get_settings
from .database import init_db
from .errors import (
    AlreadyProcessed,
    DoseEngineError,
    InvalidState,
    NotFound,
    UndoWindowExpired,
    UpstreamUnavailable,
    ValidationError,
)
from .jobs.dose_sweeper import start_background_sweeper
from .logging_config import configure_logging, current_request_id

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    InvalidState: 409,
    UndoWindowExpired: 410,
    NotFound: 404,
    UpstreamUnavailable: 503,
}


def _status_for(exc: DoseEngineError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 400


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(title="DoseGuard Dose Scheduling & Safety Engine", version="0.1.0")

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = current_request_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            current_request_id.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(AlreadyProcessed)
    async def already_processed(request: Request, exc: AlreadyProcessed):
        # a retried command: answer with what the first attempt produced
        body = exc.result.to_dict() if hasattr(exc.result, "to_dict") else {}
        body["already_processed"] = True
        return JSONResponse(status_code=200, content=body)

    @app.exception_handler(DoseEngineError)
    async def dose_engine_error(request: Request, exc: DoseEngineError):
        status = _status_for(exc)
        if status >= 500:
            logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.on_event("startup")
    def startup() -> None:
        init_db()
        if settings.SWEEPER_ENABLED:
            start_background_sweeper()

    app.include_router(health_router, prefix="/api/v1")
    app.include_router(medications_router, prefix="/api/v1")
    app.include_router(doses_router, prefix="/api/v1")
    app.include_router(preferences_router, prefix="/api/v1")
    app.include_router(safety_router, prefix="/api/v1")

    return app


app = create_app()
