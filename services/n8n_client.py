"""
n8n client for workflow engine communication.

This module wraps the n8n public REST API: tag (folder) management, workflow
creation, activation toggling, deletion and execution history. Every failure is
translated into RemoteEngineError so callers never see httpx exceptions.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
import pybreaker
from opentelemetry import trace
from opentelemetry.propagate import inject

from core.errors import RemoteEngineError
from core.metrics import metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TIMEOUT = 10.0
CREATE_TIMEOUT = 15.0


def _unwrap(body: Any) -> Any:
    """n8n answers either with the resource or with ``{"data": resource}``."""
    if isinstance(body, dict) and "data" in body and "nodes" not in body and "id" not in body:
        return body["data"]
    return body


def _remote_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:500]
    return str(body)[:500]


class N8nClient:
    """Client for the n8n public API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        create_timeout: float = CREATE_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.create_timeout = create_timeout
        self._transport = transport
        # Connection failures trip the breaker; HTTP status errors do not
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=5,
            reset_timeout=60,
            exclude=[httpx.HTTPStatusError],
        )

    def _send(self, method: str, path: str, timeout: float, **kwargs) -> httpx.Response:
        headers = {"X-N8N-API-KEY": self.api_key or "", "Accept": "application/json"}
        inject(headers)  # Inject OpenTelemetry trace context

        with httpx.Client(base_url=self.base_url, timeout=timeout, transport=self._transport) as client:
            response = client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response

    def _request(
        self,
        endpoint: str,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> httpx.Response:
        with tracer.start_as_current_span(f"n8n_{endpoint}") as span:
            span.set_attributes({"http.method": method, "n8n.path": path})
            try:
                response = self._breaker.call(self._send, method, path, timeout or self.timeout, **kwargs)
            except pybreaker.CircuitBreakerError as e:
                metrics.record_n8n_request(endpoint, "circuit_open")
                span.record_exception(e)
                raise RemoteEngineError("n8n is temporarily unavailable", endpoint=endpoint)
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                metrics.record_n8n_request(endpoint, str(status_code))
                span.set_attributes({"http.status_code": status_code})
                span.record_exception(e)
                message = _remote_message(e.response)
                logger.warning("n8n %s failed with %s: %s", endpoint, status_code, message)
                raise RemoteEngineError(
                    f"n8n {endpoint} failed: {status_code}",
                    endpoint=endpoint,
                    remote_status=status_code,
                    remote_message=message,
                )
            except httpx.TimeoutException as e:
                metrics.record_n8n_request(endpoint, "timeout")
                span.record_exception(e)
                logger.warning("n8n %s timed out", endpoint)
                raise RemoteEngineError(f"Timeout calling n8n {endpoint}", endpoint=endpoint)
            except httpx.RequestError as e:
                metrics.record_n8n_request(endpoint, "error")
                span.record_exception(e)
                logger.warning("n8n %s network error: %s", endpoint, e)
                raise RemoteEngineError(f"Network error calling n8n {endpoint}: {e}", endpoint=endpoint)

            metrics.record_n8n_request(endpoint, str(response.status_code))
            span.set_attributes({"http.status_code": response.status_code})
            return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return _unwrap(response.json())
        except ValueError:
            raise RemoteEngineError("n8n returned a non-JSON response", remote_status=response.status_code)

    def health_check(self) -> bool:
        """Best-effort reachability check; never raises."""
        try:
            self._request("health", "GET", "/workflows", params={"limit": 1})
            return True
        except RemoteEngineError:
            return False

    def list_tags(self) -> List[Dict[str, Any]]:
        """List all tags (folders)."""
        tags = self._json(self._request("tags", "GET", "/tags"))
        return tags if isinstance(tags, list) else []

    def create_tag(self, name: str) -> Dict[str, Any]:
        """Create a tag and return it."""
        return self._json(self._request("create_tag", "POST", "/tags", json={"name": name}))

    def get_or_create_tag(self, name: str) -> str:
        """
        Find a tag by exact name or create it.

        Args:
            name: Tag name (company name or tenant label)

        Returns:
            Tag id
        """
        for tag in self.list_tags():
            if tag.get("name") == name:
                logger.debug("Found existing n8n tag %s (%s)", name, tag.get("id"))
                return str(tag["id"])

        created = self.create_tag(name)
        if not created.get("id"):
            raise RemoteEngineError(f"n8n did not return an id for tag '{name}'", endpoint="create_tag")
        logger.info("Created n8n tag %s (%s)", name, created["id"])
        return str(created["id"])

    def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Fetch a workflow definition (nodes, connections, settings)."""
        return self._json(self._request("get_workflow", "GET", f"/workflows/{workflow_id}"))

    def create_workflow(
        self,
        name: str,
        nodes: List[Dict[str, Any]],
        connections: Dict[str, Any],
        settings: Optional[Dict[str, Any]] = None,
        tags: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Create a workflow. New workflows are always created inactive.

        Returns:
            Created workflow including its ``id``
        """
        payload = {
            "name": name,
            "nodes": nodes,
            "connections": connections,
            "settings": settings or {},
            "staticData": None,
            "tags": tags or [],
            "active": False,
        }
        created = self._json(
            self._request("create_workflow", "POST", "/workflows", timeout=self.create_timeout, json=payload)
        )
        if not isinstance(created, dict) or not created.get("id"):
            raise RemoteEngineError("n8n did not return a workflow id", endpoint="create_workflow")
        return created

    def update_workflow(self, workflow_id: str, workflow: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace a workflow's definition.

        Only the fields n8n accepts on PUT are sent; ``active`` and ``tags``
        are read-only there and are dropped.
        """
        payload = {
            "name": workflow.get("name"),
            "nodes": workflow.get("nodes") or [],
            "connections": workflow.get("connections") or {},
            "settings": workflow.get("settings") or {},
        }
        if "staticData" in workflow:
            payload["staticData"] = workflow["staticData"]
        if workflow.get("pinData"):
            payload["pinData"] = workflow["pinData"]
        return self._json(
            self._request("update_workflow", "PUT", f"/workflows/{workflow_id}", json=payload)
        )

    def set_active(self, workflow_id: str, active: bool) -> Dict[str, Any]:
        """Toggle the active flag of a workflow."""
        endpoint = "activate" if active else "deactivate"
        return self._json(
            self._request(endpoint, "PATCH", f"/workflows/{workflow_id}", json={"active": active})
        )

    def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Delete a workflow."""
        return self._json(self._request("delete_workflow", "DELETE", f"/workflows/{workflow_id}"))

    def list_executions(self, workflow_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Latest executions for a workflow, including run data."""
        executions = self._json(
            self._request(
                "executions",
                "GET",
                "/executions",
                params={"workflowId": workflow_id, "limit": limit, "includeData": "true"},
            )
        )
        return executions if isinstance(executions, list) else []


def _error_from_run(run: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for candidate in (run.get("error"), (run.get("data") or {}).get("error")):
        if candidate:
            return {
                "message": candidate.get("issues") or candidate.get("message") or candidate.get("description"),
                "description": candidate.get("description"),
                "type": candidate.get("name") or candidate.get("type"),
            }
    if run.get("issues"):
        return {"message": run["issues"], "description": None, "type": None}
    return None


def summarize_execution(execution: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reduce an n8n execution to the fields the dashboard shows.

    For failed executions the error is taken from the first node run that
    reports one, then from ``resultData.error``, then a generic message.
    """
    error = None
    if execution.get("status") == "error":
        result_data = (execution.get("data") or {}).get("resultData") or {}
        last_node = result_data.get("lastNodeExecuted")

        for node_name, runs in (result_data.get("runData") or {}).items():
            for run in runs or []:
                found = _error_from_run(run or {})
                if found:
                    error = dict(found, node=node_name)
                    break
            if error:
                break

        if not error and result_data.get("error"):
            raw = result_data["error"]
            error = {
                "message": raw.get("message"),
                "description": raw.get("description"),
                "type": raw.get("name") or raw.get("type"),
                "node": (raw.get("node") or {}).get("name") or last_node,
            }

        if not error:
            error = {
                "message": "Workflow execution failed",
                "description": None,
                "type": None,
                "node": last_node or "Unknown node",
            }
        error["last_node_executed"] = last_node

    return {
        "id": execution.get("id"),
        "workflow_id": execution.get("workflowId"),
        "status": execution.get("status"),
        "mode": execution.get("mode"),
        "started_at": execution.get("startedAt"),
        "stopped_at": execution.get("stoppedAt"),
        "finished": execution.get("finished"),
        "error": error,
    }
