"""
Pet-Care Mission Engine

Serves the mission API: starting missions, submitting step evidence,
lifecycle commands and the overdue sweep. Engine errors map onto HTTP
status codes in one place below.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.deps import Catalog, get_mission_catalog
from src.api.middleware.request_id import RequestIdMiddleware
from src.api.v1 import router as api_v1_router
from src.config import get_settings
from src.database import close_db, init_db
from src.engines.missions.errors import ErrorCode, MissionEngineError
from src.logging_config import configure_logging, get_logger
from src.schemas.common import ErrorResponse, HealthResponse

settings = get_settings()
logger = get_logger(__name__)

ERROR_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.VERIFICATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.DEADLINE_EXCEEDED: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_ELIGIBLE: status.HTTP_403_FORBIDDEN,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )
    logger.info("Starting %s v%s", settings.project_name, settings.version)

    await init_db()
    # Load (and validate) the catalog at boot rather than on the first request
    missions = len(get_mission_catalog())
    logger.info("Mission catalog ready", extra={"missions": missions})

    yield

    await close_db()
    logger.info("Mission engine stopped")


app = FastAPI(
    title=settings.project_name,
    description="""
    Gamified multi-step pet-care missions.

    - **Steps** are verified from photo, checklist, quiz or training evidence
    - **Difficulty** moves between easy, medium and hard from recent results
    - **Rewards** are granted exactly once per step and per mission
    - **Events** for every transition land in an append-only log
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(RequestIdMiddleware)


def _error_response(request: Request, status_code: int, content: Dict[str, Any]) -> JSONResponse:
    """JSON error body carrying the correlation id in both body and header."""
    req_id = getattr(request.state, "request_id", None)
    headers = {}
    if req_id:
        content["request_id"] = req_id
        headers["X-Request-ID"] = req_id
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(MissionEngineError)
async def mission_error_handler(request: Request, exc: MissionEngineError):
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    if status_code == status.HTTP_409_CONFLICT:
        logger.info("Rejected mission operation", extra={"code": exc.code.value, "path": request.url.path})
    body = ErrorResponse(detail=exc.message, code=exc.code.value, details=exc.details or None)
    return _error_response(request, status_code, body.model_dump(mode="json", exclude_none=True))


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, {"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies share the engine's VALIDATION_ERROR code."""
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    content = {"detail": "Validation error", "code": ErrorCode.VALIDATION_ERROR.value, "errors": errors}
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s", request.url.path)
    content: Dict[str, Any] = {"detail": "Internal server error"}
    if settings.debug:
        content = {"detail": str(exc), "type": type(exc).__name__}
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, content)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(catalog: Catalog):
    return HealthResponse(version=settings.version, missions_loaded=len(catalog))


@app.get("/", tags=["Root"])
async def root():
    """Service name, version and where the API lives."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "missions": f"{settings.api_v1_prefix}/missions",
        "docs": "/docs" if settings.debug else "disabled",
    }


app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
