"""FastAPI dependency injection functions."""

from functools import lru_cache
from typing import Optional

from fastapi import Header
import os

from core.credential_vault import CredentialVault
from models.workflow import TenantContext
from services.n8n_client import N8nClient
from services.provisioning_service import ProvisioningService
from services.workflow_store import WorkflowStore


def get_database_url():
    """Get database URL from environment."""
    # Check for explicit DATABASE_URL first
    if database_url := os.getenv("DATABASE_URL"):
        return database_url

    # Build from individual environment variables
    host = os.getenv("POSTGRES_HOST", "postgres")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "automara")
    password = os.getenv("POSTGRES_PASSWORD", "automara")
    dbname = os.getenv("POSTGRES_DB", "automara")

    return f"postgresql://{user}:{password}@{host}:{port}/{dbname}?sslmode=prefer"


@lru_cache(maxsize=1)
def get_n8n_client() -> N8nClient:
    """Shared n8n client; one instance keeps circuit breaker state across requests."""
    return N8nClient(
        base_url=os.getenv("N8N_API_URL", "http://n8n:5678/api/v1"),
        api_key=os.getenv("N8N_API_KEY"),
        timeout=float(os.getenv("N8N_TIMEOUT_SECONDS", "10")),
    )


@lru_cache(maxsize=1)
def get_credential_vault() -> CredentialVault:
    """Credential vault; raises ConfigurationError without a master key."""
    return CredentialVault()


def get_workflow_store() -> WorkflowStore:
    """Get workflow store instance."""
    return WorkflowStore(
        get_database_url(),
        lock_timeout=float(os.getenv("ACTIVATION_LOCK_TIMEOUT_SECONDS", "30")),
    )


def get_provisioning_service() -> ProvisioningService:
    """Get provisioning service instance."""
    return ProvisioningService(
        store=get_workflow_store(),
        n8n_client=get_n8n_client(),
        vault=get_credential_vault(),
    )


def get_tenant_context(
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> TenantContext:
    """Caller identity from the headers set by the upstream session layer."""
    return TenantContext(tenant_id=x_tenant_id, user_id=x_user_id, role=x_user_role)
