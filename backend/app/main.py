# ============================================================
# app/main.py
#
# FastAPI entry point for the SchoolPay reconciliation backend.
#
#   /api/v1/schoolpay/webhook   SchoolPay → us (no auth)
#   /api/v1/schoolpay/...       dashboard → us (JWT)
#   /health                     container healthcheck
#
# Every error leaves as {"success": false, "error": "..."}; the
# webhook and sync callers only ever look at those two keys.
# ============================================================

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.database import check_db_connection
from app.core.exceptions import SchoolPayError

logging.basicConfig(
    level=logging.INFO if settings.is_production else logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# httpx logs full request URLs at DEBUG, and sync URLs end in the request hash
if not settings.HTTP_CLIENT_DEBUG_LOGS:
    for noisy_logger in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")
    logger.info(f"SchoolPay API: {settings.SCHOOLPAY_BASE_URL}")
    logger.info(f"Webhook URL to register with SchoolPay: {settings.schoolpay_webhook_url}")
    if settings.SCHOOLPAY_ENFORCE_WEBHOOK_SIGNATURE:
        logger.info("Webhook signatures are enforced")

    if not await check_db_connection():
        logger.error("Database connection FAILED, check SUPABASE_URL and SUPABASE_SERVICE_KEY")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Receives SchoolPay payment webhooks, syncs SchoolPay transactions and reconciles them against student fees.",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    if request.url.path != "/health":
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"{request.method} {request.url.path} → {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


# ── Error envelopes ──────────────────────────────────────────
@app.exception_handler(SchoolPayError)
async def schoolpay_error_handler(request: Request, exc: SchoolPayError):
    logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return _error(exc.status_code, exc.message, **exc.extra)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", detail=problems)


@app.exception_handler(APIError)
async def database_error_handler(request: Request, exc: APIError):
    logger.error(f"Supabase error on {request.method} {request.url.path}: {exc.message} (code {exc.code})")
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Database error. Please try again.")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred. Please try again.")


app.include_router(api_router, prefix=settings.API_PREFIX)


@app.get("/health", tags=["Health"])
async def health_check():
    if await check_db_connection():
        return {"status": "healthy", "version": settings.APP_VERSION}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "unhealthy", "reason": "database_unreachable"},
    )


@app.get("/", tags=["Health"])
async def root():
    return {"app": settings.APP_NAME, "version": settings.APP_VERSION, "webhook": settings.schoolpay_webhook_url}
