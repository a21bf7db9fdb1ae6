"""
Baton Attendance - FastAPI Application Entry Point.

This is the main application module that:
1. Initializes the FastAPI app with CORS middleware
2. Sets up structured JSON logging
3. Implements request ID middleware (X-Request-ID header)
4. Maps custody errors to JSON error responses
5. Registers all API route handlers and the health check

The application follows a modular architecture:
- routes/: API endpoint handlers
- models/: SQLAlchemy ORM models
- services/: custody core (chain engine, trace reconstructor, attendance resolver)
- logging_config.py: Structured logging configuration
- database.py: Database connection management
"""

import time
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from baton import __version__, config
from baton.errors import BatonError
from baton.logging_config import (
    setup_logging, get_logger, log_with_context,
    request_id_var, generate_request_id
)
from baton.routes import sessions, chains, snapshots
from baton.database import create_tables

# ──────────────────────────────────────────────────────────────
# Initialize structured logging BEFORE anything else
# ──────────────────────────────────────────────────────────────
setup_logging()
logger = get_logger("http")

# Auto-create tables for SQLite local development
if config.DATABASE_URL.startswith("sqlite"):
    logger.info("Using SQLite, creating tables directly")
    create_tables()

app = FastAPI(
    title="Baton Attendance",
    description=(
        "Classroom attendance by physical custody chains: students pass a token "
        "by scanning each other's codes, every attempt is logged, and final "
        "attendance is derived from the chains once the session ends."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Assign a request ID to every HTTP request.

    An incoming X-Request-ID header is reused so scans can be correlated
    with the client's own logs; otherwise a UUID v4 is generated. The ID is
    stored in a context variable (every log entry carries it) and echoed in
    the response header.
    """
    req_id = request.headers.get("x-request-id") or generate_request_id()
    request_id_var.set(req_id)
    start_time = time.time()

    log_with_context(logger, "INFO",
        f"Request started: {request.method} {request.url.path}",
        extra_data={
            "ip": request.client.host if request.client else "unknown",
            "query_params": dict(request.query_params)
        })

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000
    response.headers["X-Request-ID"] = req_id

    log_with_context(logger, "INFO",
        f"Request completed: {request.method} {request.url.path} -> {response.status_code}",
        extra_data={
            "duration_ms": round(duration_ms, 2),
            "status_code": response.status_code
        })

    return response


@app.exception_handler(BatonError)
async def baton_error_handler(request: Request, exc: BatonError):
    """Typed custody failures become {"error": {code, message, details}}."""
    level = "WARNING" if exc.status_code < 500 else "ERROR"
    log_with_context(logger, level, f"{exc.code}: {exc.message}",
                     extra_data={"path": request.url.path, "status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"error": {"code": "INVALID_ARGUMENT", "message": str(exc), "details": {}}},
    )


app.include_router(sessions.router, tags=["Sessions"])
app.include_router(chains.router, tags=["Chains"])
app.include_router(snapshots.router, tags=["Snapshots"])


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint for Docker health checks and monitoring."""
    return {"status": "healthy", "service": "baton-attendance", "version": __version__}


@app.get("/", tags=["Root"])
def root():
    """Root endpoint with API information."""
    return {
        "service": "Baton Attendance",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "create_session": "POST /api/sessions",
            "enroll": "POST /api/sessions/{id}/enrollments",
            "seed": "POST /api/sessions/{id}/chains/seed",
            "handoff": "POST /api/sessions/{id}/chains/{chain_id}/handoff",
            "chain_trace": "GET /api/sessions/{id}/chains/{chain_id}/trace",
            "snapshot": "POST /api/sessions/{id}/snapshots",
            "end": "POST /api/sessions/{id}/end",
            "final_status": "GET /api/sessions/{id}/final-status"
        }
    }
