from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.endpoints import router as api_router
from .config import setup_logging
from .db import init_db
from .errors import (
    AlreadyResolvedError,
    ComplianceError,
    ConcurrencyConflictError,
    DuplicateRecordError,
    InvalidDeltaError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)

STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    DuplicateRecordError: 409,
    InvalidDeltaError: 409,
    AlreadyResolvedError: 409,
    ConcurrencyConflictError: 409,
    StorageUnavailableError: 503,
}


def status_code_for(error: ComplianceError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


# Create FastAPI app
app = FastAPI(
    title="Fleet Compliance Core",
    description="Driver points ledger, rest period tracking and infringement management",
    version="1.0.0"
)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.exception_handler(ComplianceError)
async def compliance_error_handler(request: Request, exc: ComplianceError):
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


@app.on_event("startup")
async def startup():
    """Initialize logging and database on startup."""
    setup_logging()
    init_db()


@app.get("/")
async def root():
    return {"message": "Fleet Compliance Core", "docs": "/docs"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
