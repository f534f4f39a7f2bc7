import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog
from prometheus_fastapi_instrumentator import Instrumentator

from app.api import auth, bookings, reviews, tours
from app.api.deps import limiter
from app.core.errors import BookingError
from app.core.settings import Settings
from app.db.session import db_manager
from app.middleware.logging import RequestLoggingMiddleware

settings = Settings()

SECRET_PATTERNS = [
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]+', re.IGNORECASE), r'\1REDACTED'),
    (re.compile(r'((?:password|secret|token)["\']?\s*[:=]\s*["\']?)[^"\'&\s,}]+', re.IGNORECASE), r'\1REDACTED'),
    (re.compile(r'(\w+://[^:/\s]+:)[^@\s]+(@)'), r'\1REDACTED\2'),
]

SENSITIVE_KEYS = {"password", "password_hash", "token", "access_token", "authorization", "jwt_secret"}

# Redaction processor to scrub credentials from any string values in the event dict
def redact_secrets(logger, method_name, event_dict):
    def scrub(v):
        if isinstance(v, str):
            for pattern, replacement in SECRET_PATTERNS:
                v = pattern.sub(replacement, v)
            return v
        if isinstance(v, list):
            return [scrub(x) for x in v]
        if isinstance(v, dict):
            return {k: "REDACTED" if str(k).lower() in SENSITIVE_KEYS else scrub(vv) for k, vv in v.items()}
        return v

    for k, v in list(event_dict.items()):
        event_dict[k] = "REDACTED" if k.lower() in SENSITIVE_KEYS else scrub(v)
    return event_dict

# Configure structured logging with JSON output
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Configure standard library logging to output to file and console
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(message)s',  # structlog handles formatting
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.LOG_FILE)
    ]
)

logger = structlog.get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting application...")
    try:
        await db_manager.initialize()
        await db_manager.init_db()
        logger.info("Database manager initialized successfully")
    except Exception:
        logger.exception("Failed to initialize database manager")
        raise

    yield

    # Shutdown
    logger.info("Shutting down application...")
    try:
        await db_manager.close()
        logger.info("Database connections closed successfully")
    except Exception as e:
        logger.error("database_cleanup_failed", error=str(e))

app = FastAPI(
    title="Tour Booking API",
    description="Tour availability, bookings and verified reviews",
    version="1.0.0",
    lifespan=lifespan
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize Prometheus metrics instrumentation
Instrumentator().instrument(app).expose(app, endpoint="/metrics")

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    logger.info(
        "booking_error",
        code=exc.code,
        status_code=exc.status_code,
        detail=exc.message,
        path=request.url.path,
        **exc.context
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

# Health check endpoint
@app.get("/")
def health_check():
    return {"status": "API active", "version": "1.0.0"}

@app.get("/health")
async def health_check_detailed():
    """Detailed health check endpoint"""
    db_health = await db_manager.health_check()
    db_status = db_health["status"]

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "version": "1.0.0",
        "components": {
            "database": db_status,
            "api": "healthy"
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

prefix = "/api/v1"

# Include API routers
app.include_router(auth.router, prefix=prefix)
app.include_router(tours.router, prefix=prefix)
app.include_router(bookings.router, prefix=prefix)
app.include_router(reviews.router, prefix=prefix)
