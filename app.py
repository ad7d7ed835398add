"""
FastAPI backend for TenderHub Bids.

MODULAR STRUCTURE:
==================
1. core/security.py          - Session tokens (Redis with in-memory fallback)
2. core/dependencies.py      - Shared FastAPI dependencies (caller identity, JSON bodies)
3. api/routes/tenders.py     - Tender authoring
4. api/routes/proposals.py   - Proposal lifecycle, submission and review
5. api/routes/collaboration.py - Section assignments, delegated editing, comments
6. api/routes/evaluation.py  - Bid evaluation and L1 determination

Business rules live in services/; this module only wires routers and maps
domain errors to HTTP responses.
"""

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
import os
import logging

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from sqlalchemy import text
from sqlalchemy.orm import Session

from database import create_tables, get_db
from core.exceptions import (
    TenderHubError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    InvalidTransitionError,
)
from core.redis_client import is_redis_available

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Status codes for domain errors, most specific class first
ERROR_STATUS_CODES = (
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ValidationError, 400),
    (InvalidTransitionError, 409),
)

# Initialize FastAPI app
app = FastAPI(title="TenderHub Bids", description="Proposal lifecycle, collaboration and bid evaluation")


# Startup event to initialize database tables
@app.on_event("startup")
async def startup_event():
    """Initialize database tables on application startup."""
    try:
        logger.info("Application startup: Ensuring database tables exist...")
        create_tables()
        logger.info("Database tables verified/created successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database tables on startup: {e}")


# Import and mount API routers
from api.routes import tenders as tenders_router
from api.routes import proposals as proposals_router
from api.routes import collaboration as collaboration_router
from api.routes import evaluation as evaluation_router
app.include_router(tenders_router.router)
app.include_router(proposals_router.router)
app.include_router(collaboration_router.router)
app.include_router(evaluation_router.router)


# =============================================================================
# CUSTOM ERROR HANDLERS
# =============================================================================

def status_code_for(exc: TenderHubError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            return status_code
    return 500


@app.exception_handler(TenderHubError)
async def domain_exception_handler(request: Request, exc: TenderHubError):
    """Map typed domain errors to JSON responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Unmapped domain error on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Custom HTTP exception handler for all errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


# Health check endpoint
@app.get("/api/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint."""
    db_status = "ok"
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {str(e)}"

    redis_session_url = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "database": db_status,
        "redis_session": {
            "status": "ok" if is_redis_available() else "unavailable",
            "url": redis_session_url.split('@')[-1] if '@' in redis_session_url else redis_session_url  # Hide credentials
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "5001")), reload=True)
