"""
Main FastAPI application for Agent Orchestrator.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Iterable, Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from .routes import router
from .. import __version__
from ..agents.base import BaseAgent
from ..models.errors import (
    CapacityExceeded, CycleDetected, ErrorCategory, ErrorDetails, ErrorResponse, ErrorSeverity,
    InvalidTransition, OrchestratorError, TaskNotFound, UnknownAgent, UnknownDependency
)
from ..orchestration.orchestrator import AgentOrchestrator
from ..utils.config import get_config
from ..utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

ERROR_STATUS_CODES = (
    (TaskNotFound, 404),
    (UnknownAgent, 404),
    (InvalidTransition, 409),
    (CapacityExceeded, 409),
    (CycleDetected, 422),
    (UnknownDependency, 422),
)

SUGGESTED_ACTIONS = {
    CycleDetected: ["Remove the dependency that closes the cycle"],
    UnknownDependency: ["Submit the missing dependencies first, or include them earlier in the batch"],
    InvalidTransition: ["Check the task status before issuing the command"],
}


def _status_code_for(exc: OrchestratorError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


def create_app(
    orchestrator: Optional[AgentOrchestrator] = None,
    agents: Optional[Iterable[BaseAgent]] = None
) -> FastAPI:
    """
    Build the API application around an orchestrator.

    Args:
        orchestrator: Orchestrator to serve. A default one is built from the global config
        agents: Agents to register once the orchestrator has started
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        logger.info("Starting Agent Orchestrator API...")
        await app.state.orchestrator.start()
        for agent in agents or ():
            await app.state.orchestrator.register_agent(agent)
        yield
        # Shutdown
        logger.info("Shutting down Agent Orchestrator API...")
        await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="Agent Orchestrator API",
        description="Task orchestration and capacity balancing for pools of autonomous agents",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.orchestrator = orchestrator or AgentOrchestrator()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add trusted host middleware
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add processing time header to responses."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        start_time = time.time()
        logger.info(f"Request: {request.method} {request.url}")

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(f"Response: {response.status_code} - {process_time:.3f}s")
        return response

    # Include API routes
    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Agent Orchestrator API",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/v1/health"
        }

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        """Map domain errors to HTTP errors."""
        status_code = _status_code_for(exc)
        logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        actions = next((a for t, a in SUGGESTED_ACTIONS.items() if isinstance(exc, t)), [])
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=exc.to_details(), suggested_actions=actions).model_dump(mode='json')
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc):
        """Handle 500 errors."""
        logger.error(f"Internal server error: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error=ErrorDetails(
                error_id=str(uuid.uuid4()),
                error_code="InternalError",
                category=ErrorCategory.SYSTEM,
                severity=ErrorSeverity.HIGH,
                message="An internal server error occurred"
            )).model_dump(mode='json')
        )

    return app


def run():
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    config = get_config()
    configure_logging(config.log_level, config.json_logging)
    uvicorn.run(
        "agent_orchestrator.api.main:create_app",
        factory=True,
        host=config.api_host,
        port=config.api_port,
        reload=config.debug
    )


if __name__ == "__main__":
    run()
