#  Generation Broker - FastAPI Application
#
#  Main app setup: lifespan, error mapping, CORS, router includes and
#  the /objects mount for locally stored artifacts.
#  Creates the DI container and manages the background loops.
#
#  Depends on: config.py, container.py, routes/*.py, middleware/auth.py
#  Used by:    run.py

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from broker.config import CORS_ORIGINS, DB_PATH, OSS_ENDPOINT, STORAGE_ROOT, validate_config
from broker.container import Container
from broker.exceptions import (
    BrokerError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    OptimisticConflictError,
    PermissionDeniedError,
    PollTimeoutError,
    RemoteFailureError,
    TransientIOError,
    ValidationError,
)
from broker.logging_config import set_request_id
from broker.middleware.auth import get_current_user
from broker.rate_limit import limiter
from broker.routes.admin import router as admin_router
from broker.routes.auth import router as auth_router
from broker.routes.models import router as models_router
from broker.routes.services import health_router, router as services_router
from broker.routes.tasks import router as tasks_router

logger = logging.getLogger("broker.app")

# Create and wire the DI container
container = Container()

# Auth dependency for all protected routes
_auth_dep = [Depends(get_current_user)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle.

    Uses AsyncExitStack so that if any startup step fails, all previously
    initialized resources are cleaned up in reverse order.
    """
    logger.info("Generation Broker starting...")

    validate_config()

    db = container.db()
    redis = container.redis()
    http_client = container.http_client()
    worker_pool = container.worker_pool()
    polling = container.polling()

    async with AsyncExitStack() as stack:
        await db.init(DB_PATH, run_migrations=True)
        stack.push_async_callback(db.close)

        stack.push_async_callback(redis.aclose)
        stack.push_async_callback(http_client.aclose)

        # Adopt or re-enqueue anything the previous process left behind
        counts = await polling.recover_stuck_tasks()
        logger.info("Start-up recovery: %s", counts)

        await polling.start()
        stack.push_async_callback(polling.stop)

        await worker_pool.start()
        stack.push_async_callback(worker_pool.stop)

        yield

    logger.info("Generation Broker shutting down")


app = FastAPI(
    title="Generation Broker",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later."},
    )


# Business errors -> HTTP status
_STATUS_BY_ERROR: list[tuple[type[BrokerError], int]] = [
    (NotFoundError, 404),
    (InsufficientFundsError, 402),
    (OptimisticConflictError, 409),
    (InvalidStateError, 409),
    (ValidationError, 400),
    (PermissionDeniedError, 403),
    (RemoteFailureError, 502),
    (TransientIOError, 502),
    (PollTimeoutError, 504),
]


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Request ID tracing
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = uuid.uuid4().hex[:12]
        set_request_id(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            set_request_id(None)

app.add_middleware(RequestIDMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Health check (public, unauthenticated)
app.include_router(health_router, prefix="/api")

# Auth routes (login is public; logout/me check the token themselves)
app.include_router(auth_router, prefix="/api")

# Protected API routes (require valid JWT)
app.include_router(tasks_router, prefix="/api", dependencies=_auth_dep)
app.include_router(models_router, prefix="/api", dependencies=_auth_dep)
app.include_router(services_router, prefix="/api", dependencies=_auth_dep)
app.include_router(admin_router, prefix="/api", dependencies=_auth_dep)

# Locally stored artifacts are served at the public base URL's /objects path
if not OSS_ENDPOINT:
    STORAGE_ROOT.mkdir(parents=True, exist_ok=True)
    app.mount("/objects", StaticFiles(directory=str(STORAGE_ROOT)), name="objects")
