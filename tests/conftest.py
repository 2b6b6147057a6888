"""
Pytest configuration and shared fixtures for the provisioning service tests.
"""

import os

import pytest
import pytest_asyncio
from httpx import AsyncClient

# Must be set before the app resolves its vault
os.environ.setdefault("CREDENTIAL_MASTER_KEY", "test-master-key-for-provisioning")

from core.credential_vault import CredentialVault
from models.workflow import GLOBAL_ADMIN_ROLE, TenantContext
from services.provisioning_service import ProvisioningService
from tests.mock.n8n_mock import MockN8nClient
from tests.mock.store_mock import InMemoryWorkflowStore

TEMPLATE_GRAPH = {
    "nodes": [
        {"id": "1", "name": "Webhook", "type": "n8n-nodes-base.webhook", "parameters": {}},
        {"id": "2", "name": "Send Email", "type": "n8n-nodes-base.emailSend", "parameters": {}},
    ],
    "connections": {"Webhook": {"main": [[{"node": "Send Email", "type": "main", "index": 0}]]}},
    "settings": {"executionOrder": "v1"},
}


@pytest.fixture(scope="session")
def vault():
    """Credential vault keyed with a fixed test secret."""
    return CredentialVault(master_key="test-master-key-for-provisioning", previous_keys=[])


@pytest.fixture(scope="function")
def store():
    return InMemoryWorkflowStore()


@pytest.fixture(scope="function")
def n8n():
    return MockN8nClient()


@pytest.fixture(scope="function")
def service(store, n8n, vault):
    """Provisioning service wired to in-memory collaborators."""
    return ProvisioningService(store=store, n8n_client=n8n, vault=vault)


@pytest.fixture(scope="function")
def acme(store):
    return store.add_tenant("acme", company_name="Acme Corp")


@pytest.fixture(scope="function")
def globex(store):
    return store.add_tenant("globex", company_name="Globex")


@pytest.fixture(scope="function")
def template(store):
    return store.add_template("Lead Intake", n8n_data=TEMPLATE_GRAPH)


@pytest.fixture(scope="function")
def acme_user(acme):
    return TenantContext(tenant_id=acme["id"], user_id="user-acme", role="member")


@pytest.fixture(scope="function")
def globex_user(globex):
    return TenantContext(tenant_id=globex["id"], user_id="user-globex", role="member")


@pytest.fixture(scope="function")
def global_admin():
    return TenantContext(tenant_id=None, user_id="root", role=GLOBAL_ADMIN_ROLE)


@pytest.fixture(scope="function")
def app(service, n8n):
    """FastAPI application with provisioning dependencies overridden."""
    from api.main import app
    from api.dependencies import get_n8n_client, get_provisioning_service

    app.dependency_overrides[get_provisioning_service] = lambda: service
    app.dependency_overrides[get_n8n_client] = lambda: n8n
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(app):
    """
    Provide async HTTP test client.

    Args:
        app: FastAPI application instance

    Yields:
        AsyncClient for making HTTP requests
    """
    from httpx import ASGITransport

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring Postgres"
    )
