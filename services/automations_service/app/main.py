"""FastAPI application for the Automations Service."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from services.automations_service.errors import (
    AutomationError,
    ConfigValidationError,
    ExternalServiceError,
    NotAuthenticated,
    PersistenceError,
)
from services.automations_service.routers import internal_router, router

logger = get_logger(__name__)

_STATUS_BY_ERROR = [
    (NotAuthenticated, status.HTTP_401_UNAUTHORIZED),
    (ConfigValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
]


async def automation_error_handler(request: Request, exc: AutomationError) -> JSONResponse:
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_code": exc.kind,
            "field": getattr(exc, "field", None),
        },
    )


def create_app() -> FastAPI:
    """Create and configure the Automations Service FastAPI app."""
    app = FastAPI(
        title="Automations Service",
        version="0.1.0",
        description="Coach automation settings and client drop-off rescue.",
    )
    add_observability_middleware(app)
    app.add_exception_handler(AutomationError, automation_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "automations"}

    app.include_router(router)
    app.include_router(internal_router)

    return app


app = create_app()
