"""
FastAPI Main Application
========================

Main entry point for the testdeck server.
Provides the test-runner REST API and its Server-Sent Events stream.
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from testdeck.run_config import is_remote_allowed
from testdeck.test_runner import TestRunner

from .exceptions import ForbiddenError, error_json_response, register_exception_handlers
from .routers import test_counts_router, test_reports_router, test_runner_router

_logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost", None)

LOCAL_ORIGINS = [
    "http://localhost:5173",      # Vite dev server
    "http://127.0.0.1:5173",
    "http://localhost:8888",      # Production
    "http://127.0.0.1:8888",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the runner on startup; abort any active run on shutdown."""
    created = getattr(app.state, "test_runner", None) is None
    if created:
        app.state.test_runner = TestRunner.from_env()
    runner = app.state.test_runner
    _logger.info("Test runner ready for %s", runner.config.project_dir)

    yield

    aborted = await runner.abort()
    if aborted:
        _logger.info("Aborted test execution %s on shutdown", aborted)
    if created:
        app.state.test_runner = None


def create_app(allow_remote: bool | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        allow_remote: Accept non-localhost clients; defaults to TESTDECK_ALLOW_REMOTE
    """
    if allow_remote is None:
        allow_remote = is_remote_allowed()

    app = FastAPI(
        title="testdeck",
        description="Test execution and live reporting API",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    # All API errors follow the same format:
    # {"error_code": "ERROR_TYPE", "message": "Human-readable message", "details": {...}}
    register_exception_handlers(app)

    # CORS - allow all origins when remote access is enabled, otherwise localhost only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_remote else LOCAL_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Security Middleware
    # ========================================================================

    if not allow_remote:
        @app.middleware("http")
        async def require_localhost(request: Request, call_next):
            """Only allow requests from localhost (disabled when TESTDECK_ALLOW_REMOTE=1)."""
            client_host = request.client.host if request.client else None
            if client_host not in LOCAL_HOSTS:
                return error_json_response(ForbiddenError("Localhost access only"))
            return await call_next(request)

    # ========================================================================
    # Routers
    # ========================================================================

    app.include_router(test_runner_router)
    app.include_router(test_reports_router)
    app.include_router(test_counts_router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def run() -> None:
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=8888,
    )


if __name__ == "__main__":
    run()
