"""FastAPI application for the Automara provisioning service."""

import logging
import os
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from api.routers import health, webhooks, workflows
from api.dependencies import get_credential_vault
from core.errors import AutomaraError
from core.metrics import metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Fails fast when CREDENTIAL_MASTER_KEY is missing
    get_credential_vault()

    metrics_port = int(os.getenv("METRICS_PORT", "8090"))
    metrics.start_metrics_server(metrics_port)
    logger.info("Prometheus metrics server started on port %s", metrics_port)

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title="Automara Provisioning API",
    lifespan=lifespan
)


@app.exception_handler(AutomaraError)
async def automara_error_handler(request: Request, exc: AutomaraError):
    """Map the error taxonomy onto HTTP responses."""
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# Include routers
app.include_router(health.router)
app.include_router(health.health_router)  # Root level health endpoints
app.include_router(workflows.router)
app.include_router(webhooks.router)


def main():
    """Main entry point for the application."""
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    logger.info("Starting Automara provisioning service on %s:%s", host, port)

    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=os.getenv("ENVIRONMENT") == "development"
    )


if __name__ == "__main__":
    main()
