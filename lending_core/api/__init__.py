"""
Lending Core API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .loans import router as loans_router
from .repayments import router as repayments_router
from .schedules import router as schedules_router
from ..errors import (
    InvalidTermError, InvalidAmountError, InvalidExtensionError, LoanNotFoundError,
    DuplicateRepaymentError, InvalidTransitionError, LoanNotPayableError
)
from ..config import get_config
from ..logging_config import get_logger, log_action, setup_logging


# Most specific first; any other rejected input is a 400
ERROR_STATUS = (
    (LoanNotFoundError, 404),
    (DuplicateRepaymentError, 409),
    (InvalidTransitionError, 409),
    (LoanNotPayableError, 409),
    (InvalidTermError, 422),
    (InvalidAmountError, 422),
    (InvalidExtensionError, 422),
)

logger = get_logger("lending.api")


def status_for(error: ValueError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


async def lending_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    status_code = status_for(exc)
    log_action(
        logger, "warning", f"{request.method} {request.url.path} rejected: {exc}",
        action="request.rejected", resource="api",
        correlation_id=request.headers.get("x-correlation-id"),
        extra={"status": status_code, "error": type(exc).__name__}
    )
    return JSONResponse(status_code=status_code,
                        content={"detail": str(exc), "error": type(exc).__name__})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Core API",
        description="Loan schedules, penalties, repayment allocation and lifecycle",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # LendingError derives from ValueError
    app.add_exception_handler(ValueError, lending_error_handler)

    # Include routers
    app.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": "1.0.0"
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with logging set up from config"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "lending_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
