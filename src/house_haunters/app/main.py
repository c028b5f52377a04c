"""FastAPI application entry point for the House Haunters booking API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from house_haunters.app.config import get_settings
from house_haunters.infra.database import async_session, init_db
from house_haunters.services.notification_service import NotificationService
from house_haunters.services.scheduler import start_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the booking scheduler."""
    await init_db()

    tasks = []
    if settings.scheduler_enabled:
        tasks = start_scheduler(async_session, NotificationService(async_session), settings)
    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="House Haunters Booking API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS: allow all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error rendering: every error body is {"message": ...}
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"message": "Invalid request", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors without the raw input or exception context."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from house_haunters.app.routes.auth import router as auth_router
from house_haunters.app.routes.bookings import router as bookings_router
from house_haunters.app.routes.viewing_requests import router as viewing_requests_router
from house_haunters.app.routes.payments import router as payments_router
from house_haunters.app.routes.disputes import router as disputes_router
from house_haunters.app.routes.admin import router as admin_router
from house_haunters.app.routes.scheduler import router as scheduler_router

app.include_router(auth_router)
app.include_router(bookings_router)
app.include_router(viewing_requests_router)
app.include_router(payments_router)
app.include_router(disputes_router)
app.include_router(admin_router)
app.include_router(scheduler_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "house-haunters"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "house_haunters.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
