"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import pydantic
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError

from crm_agents.api.routes import envelope
from crm_agents.api.routes import router as orchestrator_router
from crm_agents.config import Config
from crm_agents.core.errors import OrchestratorError, UpstreamError
from crm_agents.core.logging import configure_logging, get_logger
from crm_agents.runtime import Services, build_services, shutdown_services

logger = get_logger(name=__name__)


def _describe_validation(errors) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(config: Optional[Config] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application; the orchestrator lifecycle follows the app lifespan."""
    config = config or (services.config if services else Config.from_env())
    configure_logging(config.log_level)
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.autostart:
            await services.orchestrator.start()
        yield
        await shutdown_services(services)

    app = FastAPI(title="CRM Agent Orchestrator", lifespan=lifespan)
    app.state.services = services
    app.include_router(orchestrator_router)

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError):
        if isinstance(exc, UpstreamError):
            logger.warning("upstream_error", path=request.url.path, error=exc.message)
        return envelope(success=False, error=exc.public_message, status_code=exc.status_code)

    @app.exception_handler(pydantic.ValidationError)
    async def payload_error(request: Request, exc: pydantic.ValidationError):
        return envelope(
            success=False,
            error=_describe_validation(exc.errors()),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(RequestValidationError)
    async def request_error(request: Request, exc: RequestValidationError):
        return envelope(
            success=False,
            error=_describe_validation(exc.errors()),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, exc_info=exc)
        return envelope(
            success=False,
            error="Internal server error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def run() -> None:
    uvicorn.run("crm_agents.main:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
