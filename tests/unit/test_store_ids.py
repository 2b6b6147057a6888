"""
Row id handling in the workflow store.

Malformed ids are answered before any connection is opened, so these run
without a database.
"""

import uuid

import psycopg
import pytest

from services.workflow_store import WorkflowStore, as_uuid


@pytest.fixture
def offline_store(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("unexpected database connection")

    monkeypatch.setattr(psycopg, "connect", refuse)
    return WorkflowStore("postgresql://unused")


@pytest.mark.parametrize("bad_id", ["abc", "123", "", None, "' OR 1=1 --", 42])
def test_malformed_ids_are_missing(offline_store, bad_id):
    assert offline_store.get_instance(bad_id) is None
    assert offline_store.get_template(bad_id) is None
    assert offline_store.get_tenant(bad_id) is None
    assert offline_store.find_instance_by_name(bad_id, "Acme Corp - Lead Intake") is None


def test_as_uuid_canonicalizes():
    value = uuid.uuid4()

    assert as_uuid(value) == str(value)
    assert as_uuid(str(value).upper()) == str(value)
    assert as_uuid("nope") is None
