import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .settings import settings, DATABASE_URL
from .rate_limit import limiter
from .account import router as account_router
from .admin import router as admin_router
from .cart import router as cart_router
from .catalog import router as catalog_router
from .checkout import router as checkout_router
from . import checkout_store
from . import db
from . import otp_store
from .redis_client import close_redis


logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # Startup: initialize database pool if configured
    if DATABASE_URL:
        try:
            await db.init_pool()
            print("[startup] Database pool initialized successfully")
        except Exception as e:
            print(f"[startup] WARNING: Failed to initialize database pool: {e}")
    else:
        print("[startup] No DATABASE_URL configured - running without database")

    # Stores fall back to memory if the configured backend is unavailable
    try:
        await otp_store.init_otp_store()
        await checkout_store.init_checkout_store()
    except Exception as e:
        print(f"[startup] WARNING: Failed to initialize {settings.store_backend} stores: {e}")
        print("[startup] Falling back to in-memory stores")
    print(
        f"[startup] Stores initialized (otp={otp_store.get_store_type()}, "
        f"checkout={checkout_store.get_store_type()})"
    )

    yield

    await checkout_store.close_checkout_store()
    await otp_store.close_otp_store()
    await close_redis()
    await db.close_pool()


app = FastAPI(
    title="Duchess Pastries Storefront API",
    lifespan=lifespan,
)
app.state.limiter = limiter

app.include_router(catalog_router)
app.include_router(account_router)
app.include_router(cart_router)
app.include_router(checkout_router)
app.include_router(admin_router)

# CORS configuration from settings
# If no origins configured, allow localhost for development
allowed_origins = settings.allowed_origins if settings.allowed_origins else [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key", "Authorization", "X-Razorpay-Signature"],
)


def _get_or_create_request_id(request: Request) -> str:
    """Get request ID from header or generate one."""
    return request.headers.get("X-Request-Id") or str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every request with an X-Request-Id and logs its outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = _get_or_create_request_id(request)
        start_time = time.time()
        request.state.request_id = request_id

        response = await call_next(request)

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"[request] {request.method} {request.url.path} status={response.status_code} "
            f"duration_ms={duration_ms} request_id={request_id}"
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestContextMiddleware)


# --- Error responses: always {"error": ...} ---


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"[error] {request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    first = details[0] if details else {"field": "", "message": "Invalid request"}
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": f"{first['field']}: {first['message']}" if first["field"] else first["message"],
            "details": details,
        },
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"[limits] 429 path={request.url.path} limit={exc.detail}")
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": "rate_limited", "limit": exc.detail},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"[error] Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


# Server version for health checks
SERVER_VERSION = "1.0.0"


@app.get("/health")
async def health():
    """
    Health check endpoint - no authentication required.
    Used by load balancers and orchestrators.
    """
    database = "not_configured"
    if db.is_connected():
        try:
            database = "connected" if await db.ping() else "unavailable"
        except Exception as e:
            logger.warning(f"[health] Database ping failed: {e}")
            database = "unavailable"
    return {
        "status": "ok",
        "version": SERVER_VERSION,
        "timestamp": int(time.time()),
        "database": database,
        "otp_store": otp_store.get_store_type(),
        "checkout_store": checkout_store.get_store_type(),
        "payments_configured": bool(settings.razorpay_key_id and settings.razorpay_key_secret),
    }


def cli():
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000, reload=settings.debug)


if __name__ == "__main__":
    cli()
