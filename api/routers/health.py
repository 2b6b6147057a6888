"""Health check endpoints."""

from fastapi import APIRouter, Depends

from services.n8n_client import N8nClient
from api.dependencies import get_n8n_client

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@router.get("/ready")
def ready(n8n_client: N8nClient = Depends(get_n8n_client)):
    """Readiness check endpoint; reports whether n8n is reachable."""
    return {"status": "ready", "n8n": "reachable" if n8n_client.health_check() else "unreachable"}


# Root level health endpoint for Kubernetes probes
health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health_root():
    """Health check endpoint at root level."""
    return {"status": "healthy"}


@health_router.get("/ready")
def ready_root(n8n_client: N8nClient = Depends(get_n8n_client)):
    """Readiness check endpoint at root level."""
    return {"status": "ready", "n8n": "reachable" if n8n_client.health_check() else "unreachable"}
