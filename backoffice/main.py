import asyncio
from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.config import settings
from backoffice.core import errors
from backoffice.database import init_db, close_db, get_db
from backoffice.logging_config import setup_logging
from backoffice.middleware.correlation import CorrelationIdMiddleware
from backoffice.services.storage import ReceiptStorage, get_storage

# Import models so they are registered with Base.metadata
import backoffice.models  # noqa: F401

logger = structlog.get_logger()

ERROR_STATUS = {
    errors.ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.InvalidBinding: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.DanglingAttachment: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.InvalidState: status.HTTP_409_CONFLICT,
    errors.IllegalTransition: status.HTTP_409_CONFLICT,
    errors.AlreadyDecided: status.HTTP_409_CONFLICT,
    errors.AlreadyLiquidated: status.HTTP_409_CONFLICT,
    errors.Conflict: status.HTTP_409_CONFLICT,
    errors.NotFound: status.HTTP_404_NOT_FOUND,
    errors.PermissionDenied: status.HTTP_403_FORBIDDEN,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_backoffice", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers: every error leaves as
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(errors.LiquidationError)
async def liquidation_error_handler(request: Request, exc: errors.LiquidationError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.warning(
        "liquidation_request_failed",
        code=exc.code,
        message=exc.message,
        status_code=status_code,
    )
    body = {"error": {"code": exc.code, "message": exc.message}}
    if exc.details:
        body["error"]["details"] = exc.details
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances (e.g. from Decimal parsing)
    return [
        {k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()
    ]


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(
    response: Response,
    db: AsyncSession = Depends(get_db),
    storage: ReceiptStorage = Depends(get_storage),
):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    try:
        await asyncio.to_thread(storage.s3.head_bucket, Bucket=storage.bucket)
        health_status["checks"]["storage"] = "ok"
    except Exception as e:
        logger.error("health_check_storage_failed", error=str(e))
        health_status["checks"]["storage"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from backoffice.routes.liquidations import router as liquidations_router  # noqa: E402
from backoffice.routes.receipts import router as receipts_router  # noqa: E402

app.include_router(liquidations_router, prefix="/api/v1/liquidations", tags=["Liquidations"])
app.include_router(receipts_router, prefix="/api/v1/receipts", tags=["Receipts"])
