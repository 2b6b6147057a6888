"""
n8n client tests against an in-process mock transport.
"""

import json

import httpx
import pytest

from core.errors import RemoteEngineError
from services.n8n_client import N8nClient, summarize_execution


def make_client(handler) -> N8nClient:
    return N8nClient(
        base_url="http://n8n.test/api/v1/",
        api_key="test-api-key",
        transport=httpx.MockTransport(handler),
    )


def test_sends_api_key_and_unwraps_data():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["api_key"] = request.headers.get("X-N8N-API-KEY")
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"data": [{"id": "7", "name": "Acme Corp"}]})

    tags = make_client(handler).list_tags()

    assert seen["api_key"] == "test-api-key"
    assert seen["url"] == "http://n8n.test/api/v1/tags"
    assert tags == [{"id": "7", "name": "Acme Corp"}]


def test_get_or_create_tag_reuses_existing():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.method)
        return httpx.Response(200, json={"data": [{"id": "7", "name": "Acme Corp"}]})

    assert make_client(handler).get_or_create_tag("Acme Corp") == "7"
    assert requests == ["GET"]


def test_get_or_create_tag_creates_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"data": []})
        assert json.loads(request.content) == {"name": "tenant_42"}
        return httpx.Response(200, json={"id": 9, "name": "tenant_42"})

    assert make_client(handler).get_or_create_tag("tenant_42") == "9"


def test_create_workflow_is_always_inactive():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "55", "name": captured["name"], "active": False})

    created = make_client(handler).create_workflow(
        name="Acme Corp - Lead Intake",
        nodes=[{"name": "Webhook"}],
        connections={},
        tags=[{"id": "7"}],
    )

    assert created["id"] == "55"
    assert captured["active"] is False
    assert captured["tags"] == [{"id": "7"}]
    assert captured["staticData"] is None


def test_create_workflow_without_id_fails():
    client = make_client(lambda request: httpx.Response(200, json={"name": "x"}))

    with pytest.raises(RemoteEngineError):
        client.create_workflow(name="x", nodes=[], connections={})


def test_set_active_patches_workflow():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "55", "active": False})

    make_client(handler).set_active("55", False)

    assert captured == {"method": "PATCH", "path": "/api/v1/workflows/55", "body": {"active": False}}


def test_error_status_becomes_remote_engine_error():
    client = make_client(lambda request: httpx.Response(404, json={"message": "Workflow not found"}))

    with pytest.raises(RemoteEngineError) as exc_info:
        client.delete_workflow("404")

    error = exc_info.value
    assert error.remote_status == 404
    assert error.endpoint == "delete_workflow"
    assert error.remote_message == "Workflow not found"
    assert error.status_code == 502


def test_timeout_becomes_remote_engine_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RemoteEngineError) as exc_info:
        make_client(handler).get_workflow("1")

    assert exc_info.value.remote_status is None
    assert "Timeout" in exc_info.value.message


def test_circuit_opens_after_repeated_connection_failures():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    for _ in range(6):
        with pytest.raises(RemoteEngineError):
            client.list_tags()

    # Once open, requests fail without reaching n8n
    assert len(calls) == 5
    with pytest.raises(RemoteEngineError) as exc_info:
        client.list_tags()
    assert "temporarily unavailable" in exc_info.value.message


def test_health_check_never_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert make_client(handler).health_check() is False
    assert make_client(lambda request: httpx.Response(200, json={"data": []})).health_check() is True


def test_list_executions_params():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(dict(request.url.params))
        return httpx.Response(200, json={"data": [{"id": "1"}], "nextCursor": None})

    executions = make_client(handler).list_executions("55", limit=3)

    assert captured == {"workflowId": "55", "limit": "3", "includeData": "true"}
    assert executions == [{"id": "1"}]


class TestSummarizeExecution:
    """Execution summaries."""

    def test_success_has_no_error(self):
        summary = summarize_execution({
            "id": "1", "workflowId": "55", "status": "success", "mode": "webhook",
            "startedAt": "2024-01-01T00:00:00Z", "stoppedAt": "2024-01-01T00:00:01Z", "finished": True,
        })

        assert summary["status"] == "success"
        assert summary["error"] is None
        assert summary["workflow_id"] == "55"

    def test_error_from_node_run(self):
        summary = summarize_execution({
            "id": "2",
            "status": "error",
            "data": {"resultData": {
                "lastNodeExecuted": "Send Email",
                "runData": {
                    "Webhook": [{"data": {}}],
                    "Send Email": [{"error": {"message": "SMTP refused", "name": "NodeApiError"}}],
                },
            }},
        })

        assert summary["error"]["message"] == "SMTP refused"
        assert summary["error"]["node"] == "Send Email"
        assert summary["error"]["type"] == "NodeApiError"
        assert summary["error"]["last_node_executed"] == "Send Email"

    def test_error_from_result_data(self):
        summary = summarize_execution({
            "id": "3",
            "status": "error",
            "data": {"resultData": {
                "error": {"message": "Bad credentials", "node": {"name": "HTTP Request"}},
            }},
        })

        assert summary["error"]["message"] == "Bad credentials"
        assert summary["error"]["node"] == "HTTP Request"

    def test_generic_error_when_nothing_reported(self):
        summary = summarize_execution({"id": "4", "status": "error", "data": {"resultData": {}}})

        assert summary["error"]["message"] == "Workflow execution failed"
        assert summary["error"]["node"] == "Unknown node"


def test_update_workflow_sends_only_writable_fields():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "55"})

    make_client(handler).update_workflow("55", {
        "id": "55",
        "name": "Acme Corp - Lead Intake",
        "nodes": [{"id": "n1"}],
        "connections": {},
        "active": True,
        "tags": [{"id": "7"}],
        "staticData": None,
        "pinData": {},
    })

    assert captured["method"] == "PUT"
    assert captured["body"] == {
        "name": "Acme Corp - Lead Intake",
        "nodes": [{"id": "n1"}],
        "connections": {},
        "settings": {},
        "staticData": None,
    }
