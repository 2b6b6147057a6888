"""
Workflow store integration tests against a real Postgres.

Skipped unless DATABASE_URL points at a database the tests may write to.
"""

import os
import threading

import pytest

from services.workflow_store import DuplicateInstanceError, TenantBusyError, WorkflowStore
from tests.helpers.database import TestDatabase

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not os.getenv("DATABASE_URL"), reason="DATABASE_URL not set"),
]


@pytest.fixture(scope="function")
def test_db():
    """Provide test database instance with automatic cleanup."""
    db = TestDatabase()
    db.apply_schema()
    yield db
    db.cleanup()
    db.close()


@pytest.fixture(scope="function")
def workflow_store(test_db):
    return WorkflowStore(test_db.database_url)


def insert(workflow_store, tenant_id, template_id, name="Acme Corp - Lead Intake", **kwargs):
    return workflow_store.insert_instance(
        tenant_id=tenant_id,
        n8n_workflow_id=kwargs.pop("n8n_workflow_id", "101"),
        name=name,
        n8n_data={"id": "101", "nodes": []},
        parent_workflow_id=template_id,
        folder_name="Acme Corp",
        **kwargs
    )


def test_tenant_and_template_lookup(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")

    tenant = workflow_store.get_tenant(tenant_id)
    assert tenant["company_name"] == "Acme Corp"
    assert tenant["status"] == "active"

    template = workflow_store.get_template(template_id)
    assert template["is_template"] is True
    assert template["n8n_data"] == {"nodes": [], "connections": {}}


def test_instance_round_trip(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")

    instance = insert(
        workflow_store, tenant_id, template_id,
        created_by="user-1", encrypted_credentials={"api_key": "v1:abc"}, webhook_secret="v1:def",
    )

    assert instance["active"] is False
    assert instance["tenant_id"] == tenant_id
    assert instance["encrypted_credentials"] == {"api_key": "v1:abc"}
    assert workflow_store.get_template(instance["id"]) is None
    assert workflow_store.find_instance_by_name(tenant_id, "Acme Corp - Lead Intake")["id"] == instance["id"]

    workflow_store.set_instance_active(instance["id"], True)
    assert workflow_store.get_instance(instance["id"])["active"] is True


def test_duplicate_instance_rejected(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")
    insert(workflow_store, tenant_id, template_id)

    with pytest.raises(DuplicateInstanceError):
        insert(workflow_store, tenant_id, template_id, n8n_workflow_id="102")


def test_same_name_allowed_for_other_tenant(test_db, workflow_store):
    template_id = test_db.create_test_template("Lead Intake")
    first = insert(workflow_store, test_db.create_test_tenant("acme"), template_id)
    second = insert(workflow_store, test_db.create_test_tenant("acme-2"), template_id)

    assert first["id"] != second["id"]


def test_activity_survives_instance_delete(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")
    instance = insert(workflow_store, tenant_id, template_id)

    workflow_store.insert_activity(instance["id"], "user-1", "deleted", {"was_active": False})
    workflow_store.delete_instance(instance["id"])

    assert workflow_store.get_instance(instance["id"]) is None
    [entry] = test_db.get_activity(instance["id"])
    assert entry["action"] == "deleted"
    assert entry["details"] == {"was_active": False}


def test_delete_instance_never_removes_templates(test_db, workflow_store):
    template_id = test_db.create_test_template("Lead Intake")

    workflow_store.delete_instance(template_id)

    assert workflow_store.get_template(template_id) is not None


def test_tenant_lock_serializes_holders(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme")
    order = []
    inside = threading.Event()

    def contender():
        inside.wait()
        with workflow_store.tenant_lock(tenant_id):
            order.append("second")

    thread = threading.Thread(target=contender)
    thread.start()
    with workflow_store.tenant_lock(tenant_id):
        inside.set()
        thread.join(timeout=0.5)
        order.append("first")
    thread.join(timeout=5)

    assert order == ["first", "second"]


@pytest.mark.parametrize("bad_id", ["abc", "123", "", None])
def test_malformed_ids_read_as_missing(test_db, workflow_store, bad_id):
    assert workflow_store.get_instance(bad_id) is None
    assert workflow_store.get_template(bad_id) is None
    assert workflow_store.get_tenant(bad_id) is None
    assert workflow_store.find_instance_by_name(bad_id, "Acme Corp - Lead Intake") is None


def test_record_webhook(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")
    instance = insert(workflow_store, tenant_id, template_id)

    first = workflow_store.record_webhook(instance["id"], {"lead": "Ada"})
    workflow_store.record_webhook(instance["id"], {"raw": "name=Bob"})

    assert first["status"] == "received"
    assert first["input_data"] == {"lead": "Ada"}
    assert first["workflow_id"] == instance["id"]
    row = workflow_store.get_instance(instance["id"])
    assert row["execution_count"] == 2
    assert row["last_executed"] is not None


def test_update_instance_settings(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme", company_name="Acme Corp")
    template_id = test_db.create_test_template("Lead Intake")
    instance = insert(workflow_store, tenant_id, template_id)
    graph = {"id": "101", "nodes": [{"id": "1", "parameters": {"path": "intake"}}]}

    workflow_store.update_instance_settings(instance["id"], graph, {"1_api_key": "v1:sealed"})

    row = workflow_store.get_instance(instance["id"])
    assert row["n8n_data"] == graph
    assert row["encrypted_credentials"] == {"1_api_key": "v1:sealed"}


def test_tenant_lock_times_out(test_db, workflow_store):
    tenant_id = test_db.create_test_tenant("acme")
    impatient = WorkflowStore(test_db.database_url, lock_timeout=0.2)

    with workflow_store.tenant_lock(tenant_id):
        with pytest.raises(TenantBusyError):
            with impatient.tenant_lock(tenant_id):
                pass

    # Free again once the holder exits
    with impatient.tenant_lock(tenant_id):
        pass
