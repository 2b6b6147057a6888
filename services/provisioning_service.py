"""
Provisioning service for tenant workflow instances.

This service clones template workflows into a tenant's namespace in n8n and
keeps the local workflow rows consistent with the remote engine while doing so.
Write ordering rules:

- activate: remote create, then local insert (inactive), then remote activate,
  then local flag. The local row is the recovery anchor; retrying activate on a
  tenant that already owns an inactive row resumes it instead of cloning again.
- deactivate/delete: the remote call happens first and local state changes only
  after it succeeds.
- update settings: n8n accepts the patched workflow before the local graph and
  merged credentials are stored.
"""

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg
from opentelemetry import trace

from core.credential_vault import CredentialVault
from core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    RemoteEngineError,
    TenantInactiveError,
    ValidationError,
)
from core.metrics import metrics
from models.workflow import TenantContext
from services.activity_log_service import (
    ACTION_ACTIVATED,
    ACTION_DEACTIVATED,
    ACTION_DELETED,
    ACTION_SETTINGS_UPDATED,
    ActivityLogService,
)
from services.n8n_client import N8nClient, summarize_execution
from services.workflow_store import DuplicateInstanceError, TenantBusyError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ACTIVE_TENANT_STATUS = "active"

# Setting fields whose values are stored encrypted with the instance
SECRET_SETTING_FIELDS = {"api_key", "smtp_password"}


def _set_parameter(name: str):
    def apply(parameters: Dict[str, Any], value: str) -> None:
        parameters[name] = value
    return apply


def _apply_api_key(parameters: Dict[str, Any], value: str) -> None:
    parameters.setdefault("authentication", "genericCredentialType")
    parameters.setdefault("genericAuthType", "httpHeaderAuth")
    if not isinstance(parameters.get("httpHeaderAuth"), dict):
        parameters["httpHeaderAuth"] = {}
    parameters["httpHeaderAuth"]["name"] = "Authorization"
    parameters["httpHeaderAuth"]["value"] = f"Bearer {value}"


SETTING_FIELDS = {
    "api_key": _apply_api_key,
    "api_endpoint": _set_parameter("url"),
    "webhook_url": _set_parameter("path"),
    "email": _set_parameter("fromEmail"),
    "smtp_host": _set_parameter("host"),
    "smtp_password": _set_parameter("password"),
}


def setting_field(key: str) -> str:
    """Field part of a ``{nodeId}_{field}`` setting key."""
    return key.partition("_")[2]


def apply_settings(nodes: List[Dict[str, Any]], values: Dict[str, str]) -> List[str]:
    """
    Write ``{nodeId}_{field}`` values into node parameters in place.

    Keys naming an unknown node or field are skipped.

    Returns:
        Sorted keys that were applied
    """
    nodes_by_id = {str(node.get("id")): node for node in nodes if isinstance(node, dict)}
    applied = []
    for key, value in values.items():
        node_id, _, field = key.partition("_")
        node = nodes_by_id.get(node_id)
        apply = SETTING_FIELDS.get(field)
        if node is None or apply is None:
            logger.debug("Skipping setting %s: no matching node or field", key)
            continue
        if not isinstance(node.get("parameters"), dict):
            node["parameters"] = {}
        apply(node["parameters"], str(value))
        applied.append(key)
    return sorted(applied)


def tenant_company_name(tenant: Dict[str, Any]) -> str:
    return tenant.get("company_name") or tenant.get("name") or "Company"


def instance_name(company_name: str, template_name: str) -> str:
    """Tenant-qualified workflow name."""
    return f"{company_name} - {template_name}"


def tenant_tag(tenant_id: str) -> str:
    return f"tenant_{tenant_id}"


def instance_summary(instance: Dict[str, Any], company_name: Optional[str] = None) -> Dict[str, Any]:
    """Public view of an instance row; never includes credential material."""
    return {
        "id": instance["id"],
        "name": instance["name"],
        "n8n_workflow_id": instance.get("n8n_workflow_id"),
        "tenant_id": instance.get("tenant_id"),
        "company_name": company_name,
        "folder": instance.get("folder_name"),
        "active": bool(instance.get("active")),
        "template_id": instance.get("parent_workflow_id"),
        "created_at": instance.get("created_at"),
    }


class ProvisioningService:
    """Creates, activates, deactivates and deletes tenant workflow instances."""

    def __init__(
        self,
        store,
        n8n_client: N8nClient,
        vault: CredentialVault,
        activity_log: Optional[ActivityLogService] = None,
    ):
        self.store = store
        self.n8n = n8n_client
        self.vault = vault
        self.activity_log = activity_log or ActivityLogService(store)

    @contextmanager
    def _database_errors(self, operation: str, tenant_id: Optional[str] = None, workflow_id: Optional[str] = None):
        try:
            yield
        except psycopg.Error as e:
            logger.error(
                "Database error during %s (tenant=%s, workflow=%s): %s",
                operation, tenant_id, workflow_id, type(e).__name__
            )
            raise ProvisioningError(f"Failed to {operation} workflow: database error")

    # Activation

    def activate(
        self,
        template_id: Optional[str],
        context: TenantContext,
        target_tenant_id: Optional[str] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Provision a template for a tenant, or resume the tenant's inactive instance.

        Args:
            template_id: Template workflow ID
            context: Caller identity
            target_tenant_id: Tenant to provision for (global admins only, when
                it differs from the caller's tenant)
            credentials: Plaintext secrets to store encrypted with the instance

        Returns:
            Dictionary with ``workflow`` (instance summary), ``message`` and,
            for fresh instances, the plaintext ``webhook_secret``

        Raises:
            ValidationError, NotFoundError, AuthorizationError, ConflictError,
            RemoteEngineError, ProvisioningError
        """
        with metrics.time_operation("activate"), tracer.start_as_current_span("activate_workflow") as span:
            if not template_id:
                raise ValidationError("Template ID required")
            tenant_id = self._resolve_target_tenant(context, target_tenant_id)
            span.set_attributes({"tenant_id": tenant_id, "template_id": str(template_id)})

            with self._database_errors("activate", tenant_id=tenant_id, workflow_id=template_id):
                tenant = self.store.get_tenant(tenant_id)
                if not tenant:
                    raise NotFoundError("Tenant not found")
                if (tenant.get("status") or ACTIVE_TENANT_STATUS) != ACTIVE_TENANT_STATUS:
                    raise TenantInactiveError(f"Tenant is {tenant.get('status')}")

                template = self.store.get_template(template_id)
                if not template:
                    raise NotFoundError("Template workflow not found")

                company_name = tenant_company_name(tenant)
                name = instance_name(company_name, template["name"])

                try:
                    with self.store.tenant_lock(tenant_id):
                        existing = self.store.find_instance_by_name(tenant_id, name)
                        if existing:
                            if existing.get("active"):
                                logger.info("Workflow %s already active for tenant %s", existing["id"], tenant_id)
                                raise ConflictError(
                                    "Workflow already activated for your company",
                                    instance_summary(existing, company_name),
                                )
                            return self._resume(existing, template, company_name, context)

                        return self._provision(tenant_id, template, company_name, name, context, credentials)
                except TenantBusyError:
                    logger.warning("Activation lock busy for tenant %s", tenant_id)
                    raise ConflictError("Another activation for this tenant is in progress")

    def _resolve_target_tenant(self, context: TenantContext, target_tenant_id: Optional[str]) -> str:
        if target_tenant_id and str(target_tenant_id) != str(context.tenant_id):
            if not context.is_global_admin:
                raise AuthorizationError("Only global administrators can provision workflows for another tenant")
            return str(target_tenant_id)
        if context.tenant_id:
            return str(context.tenant_id)
        if context.is_global_admin:
            raise ValidationError("Global admins must specify target tenant ID")
        raise ValidationError("Tenant ID required")

    def _provision(
        self,
        tenant_id: str,
        template: Dict[str, Any],
        company_name: str,
        name: str,
        context: TenantContext,
        credentials: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        folder_id = self.n8n.get_or_create_tag(company_name)
        tenant_tag_id = self.n8n.get_or_create_tag(tenant_tag(tenant_id))

        graph = self._template_graph(template)
        created = self.n8n.create_workflow(
            name=name,
            nodes=graph.get("nodes") or [],
            connections=graph.get("connections") or {},
            settings=graph.get("settings") or {},
            tags=[{"id": folder_id}, {"id": tenant_tag_id}],
        )
        remote_id = str(created["id"])
        logger.info("Created n8n workflow %s (%s) for tenant %s", remote_id, name, tenant_id)

        webhook_secret = self.vault.generate_token(32)
        try:
            instance = self.store.insert_instance(
                tenant_id=tenant_id,
                n8n_workflow_id=remote_id,
                name=name,
                n8n_data=created,
                parent_workflow_id=template["id"],
                folder_name=company_name,
                created_by=context.user_id,
                encrypted_credentials=self.vault.encrypt_mapping(credentials),
                webhook_secret=self.vault.encrypt(webhook_secret),
            )
        except DuplicateInstanceError:
            # Lost a race despite the lock (e.g. a writer without it)
            self._discard_orphan(remote_id, tenant_id)
            existing = self.store.find_instance_by_name(tenant_id, name)
            raise ConflictError(
                "Workflow already activated for your company",
                instance_summary(existing, company_name) if existing else None,
            )
        except psycopg.Error as e:
            logger.error(
                "Failed to record workflow %s for tenant %s: %s", remote_id, tenant_id, type(e).__name__
            )
            self._discard_orphan(remote_id, tenant_id)
            raise ProvisioningError("Failed to record workflow instance", {"n8n_workflow_id": remote_id})

        try:
            self.n8n.set_active(remote_id, True)
        except RemoteEngineError as e:
            logger.warning(
                "Workflow %s created but n8n activation failed; retry activate to resume", instance["id"]
            )
            e.details["workflow"] = instance_summary(instance, company_name)
            raise

        self.store.set_instance_active(instance["id"], True)
        instance["active"] = True

        self.activity_log.record(
            instance["id"],
            context.user_id,
            ACTION_ACTIVATED,
            ActivityLogService.activation_details(template, company_name, remote_id, company_name),
        )
        return {
            "message": "Workflow activated successfully",
            "workflow": instance_summary(instance, company_name),
            "webhook_secret": webhook_secret,
        }

    def _resume(
        self,
        instance: Dict[str, Any],
        template: Dict[str, Any],
        company_name: str,
        context: TenantContext,
    ) -> Dict[str, Any]:
        remote_id = instance.get("n8n_workflow_id")
        if not remote_id:
            raise ProvisioningError("Workflow instance is not linked to n8n", {"workflow_id": instance["id"]})

        self.n8n.set_active(remote_id, True)
        self.store.set_instance_active(instance["id"], True)
        instance["active"] = True

        self.activity_log.record(
            instance["id"],
            context.user_id,
            ACTION_ACTIVATED,
            ActivityLogService.activation_details(
                template, company_name, remote_id, instance.get("folder_name"), resumed=True
            ),
        )
        logger.info("Resumed workflow %s for tenant %s", instance["id"], instance.get("tenant_id"))
        return {
            "message": "Workflow reactivated successfully",
            "workflow": instance_summary(instance, company_name),
            "webhook_secret": None,
        }

    def _template_graph(self, template: Dict[str, Any]) -> Dict[str, Any]:
        """Template graph from the local snapshot, else read fresh from n8n."""
        snapshot = template.get("n8n_data")
        if isinstance(snapshot, dict) and isinstance(snapshot.get("nodes"), list):
            return snapshot

        remote_id = template.get("n8n_workflow_id")
        if not remote_id:
            raise ValidationError("Template has no workflow definition")
        graph = self.n8n.get_workflow(remote_id)
        if not isinstance(graph.get("nodes"), list):
            raise RemoteEngineError("Template workflow has no nodes array", endpoint="get_workflow")
        return graph

    def _discard_orphan(self, remote_id: str, tenant_id: str) -> None:
        """Best-effort removal of a remote workflow whose local row was not written."""
        try:
            self.n8n.delete_workflow(remote_id)
            logger.info("Removed orphan n8n workflow %s for tenant %s", remote_id, tenant_id)
        except RemoteEngineError:
            logger.error("Orphan n8n workflow %s left behind for tenant %s", remote_id, tenant_id)

    # Instance lifecycle

    def _load_instance(self, instance_id: Optional[str], context: TenantContext) -> Dict[str, Any]:
        if not instance_id:
            raise ValidationError("Workflow ID required")
        instance = self.store.get_instance(instance_id)
        if not instance:
            raise NotFoundError("Workflow not found")
        if not context.is_global_admin and (
            not context.tenant_id or str(instance.get("tenant_id")) != str(context.tenant_id)
        ):
            raise AuthorizationError("Not authorized to manage this workflow")
        return instance

    def activate_instance(self, instance_id: str, context: TenantContext) -> Dict[str, Any]:
        """Re-activate an existing instance by ID; already active is a no-op."""
        with metrics.time_operation("start"), tracer.start_as_current_span("start_workflow"):
            with self._database_errors("start", tenant_id=context.tenant_id, workflow_id=instance_id):
                instance = self._load_instance(instance_id, context)
                if instance.get("is_template"):
                    raise ValidationError("Template workflows cannot be started")
                if instance.get("active"):
                    return {"success": True, "message": "Workflow already active"}

                remote_id = instance.get("n8n_workflow_id")
                if not remote_id:
                    raise ValidationError("Workflow not linked to n8n")

                self.n8n.set_active(remote_id, True)
                self.store.set_instance_active(instance["id"], True)
                self.activity_log.record(
                    instance["id"],
                    context.user_id,
                    ACTION_ACTIVATED,
                    {
                        "template_id": instance.get("parent_workflow_id"),
                        "n8n_workflow_id": remote_id,
                        "folder_name": instance.get("folder_name"),
                        "resumed": True,
                    },
                )
                return {"success": True, "message": "Workflow started successfully"}

    def deactivate(self, instance_id: str, context: TenantContext) -> Dict[str, Any]:
        """
        Deactivate an instance in n8n, then locally.

        Raises:
            NotFoundError, AuthorizationError, ValidationError, RemoteEngineError
        """
        with metrics.time_operation("deactivate"), tracer.start_as_current_span("deactivate_workflow"):
            with self._database_errors("deactivate", tenant_id=context.tenant_id, workflow_id=instance_id):
                instance = self._load_instance(instance_id, context)
                if instance.get("is_template"):
                    raise ValidationError("Template workflows cannot be deactivated")

                remote_id = instance.get("n8n_workflow_id")
                if remote_id:
                    self.n8n.set_active(remote_id, False)

                self.store.set_instance_active(instance["id"], False)
                self.activity_log.record(
                    instance["id"],
                    context.user_id,
                    ACTION_DEACTIVATED,
                    ActivityLogService.deactivation_details(instance),
                )
                return {"success": True, "message": "Workflow deactivated successfully"}

    def delete(self, instance_id: str, context: TenantContext) -> Dict[str, Any]:
        """
        Delete an instance from n8n and then locally.

        A failed remote delete aborts the operation and leaves the row in place.
        A remote 404 means the workflow is already gone and deletion proceeds.
        """
        with metrics.time_operation("delete"), tracer.start_as_current_span("delete_workflow"):
            with self._database_errors("delete", tenant_id=context.tenant_id, workflow_id=instance_id):
                instance = self._load_instance(instance_id, context)
                if instance.get("is_template"):
                    raise ValidationError("Cannot delete template workflows")

                remote_id = instance.get("n8n_workflow_id")
                if remote_id:
                    try:
                        self.n8n.delete_workflow(remote_id)
                    except RemoteEngineError as e:
                        if e.remote_status != 404:
                            logger.error("Keeping workflow %s: n8n delete failed", instance["id"])
                            raise
                        logger.warning("n8n workflow %s already deleted", remote_id)

                self.activity_log.record(
                    instance["id"],
                    context.user_id,
                    ACTION_DELETED,
                    ActivityLogService.deletion_details(instance),
                )
                self.store.delete_instance(instance["id"])
                return {"success": True, "message": "Workflow deleted successfully"}

    def list_executions(self, instance_id: str, context: TenantContext, limit: int = 5) -> List[Dict[str, Any]]:
        """Latest n8n executions of an instance, summarized."""
        with self._database_errors("list executions", tenant_id=context.tenant_id, workflow_id=instance_id):
            instance = self._load_instance(instance_id, context)
        remote_id = instance.get("n8n_workflow_id")
        if not remote_id:
            return []
        return [summarize_execution(execution) for execution in self.n8n.list_executions(remote_id, limit)]

    def verify_webhook(
        self,
        instance_id: str,
        payload: Any,
        signature: Optional[str],
        timestamp: Optional[str],
    ) -> bool:
        """
        Check an inbound webhook against the instance's signing secret.

        ``payload`` must be the raw request body; signatures are computed over
        the bytes as received.
        """
        with self._database_errors("verify webhook", workflow_id=instance_id):
            instance = self.store.get_instance(instance_id)
        if not instance or instance.get("is_template"):
            raise NotFoundError("Workflow not found")

        secret = self.vault.decrypt(instance.get("webhook_secret"))
        if not secret:
            logger.warning("Webhook secret for workflow %s is unavailable", instance_id)
            return False
        return self.vault.verify_timestamped_signature(payload, signature, timestamp, secret)

    def record_webhook(self, instance_id: str, payload: bytes) -> Dict[str, Any]:
        """
        Record an accepted webhook call against its instance.

        JSON bodies are stored as parsed; anything else is kept as text under ``raw``.

        Returns:
            The stored execution row
        """
        try:
            input_data = json.loads(payload)
        except ValueError:
            text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
            input_data = {"raw": text}

        with self._database_errors("record webhook", workflow_id=instance_id):
            instance = self.store.get_instance(instance_id)
            if not instance or instance.get("is_template"):
                raise NotFoundError("Workflow not found")
            execution = self.store.record_webhook(instance["id"], input_data)
        logger.info("Recorded webhook call %s for workflow %s", execution["id"], instance["id"])
        return execution

    def update_settings(
        self,
        instance_id: str,
        context: TenantContext,
        settings: Dict[str, Optional[str]],
    ) -> Dict[str, Any]:
        """
        Apply ``{nodeId}_{field}`` settings to an instance's n8n workflow.

        Secret fields are merged into the stored encrypted credentials and every
        stored credential is decrypted and re-applied with the plain settings.
        The local row only changes after n8n accepted the updated workflow.

        Returns:
            Dictionary with ``updated`` and the ``applied`` setting keys

        Raises:
            ValidationError, NotFoundError, AuthorizationError, RemoteEngineError
        """
        with metrics.time_operation("update_settings"), tracer.start_as_current_span("update_workflow_settings"):
            if not isinstance(settings, dict) or not settings:
                raise ValidationError("Settings required")

            with self._database_errors("update settings", tenant_id=context.tenant_id, workflow_id=instance_id):
                instance = self._load_instance(instance_id, context)
                if instance.get("is_template"):
                    raise ValidationError("Template workflows cannot be configured")
                remote_id = instance.get("n8n_workflow_id")
                if not remote_id:
                    raise ValidationError("Workflow not linked to n8n")

                secrets = {k: v for k, v in settings.items() if setting_field(k) in SECRET_SETTING_FIELDS}
                credentials = dict(instance.get("encrypted_credentials") or {})
                credentials.update(self.vault.encrypt_mapping(secrets))

                values = {k: v for k, v in self.vault.decrypt_mapping(credentials).items() if v}
                for key, value in settings.items():
                    if key not in secrets and value:
                        values[key] = value

                workflow = self.n8n.get_workflow(remote_id)
                applied = apply_settings(workflow.get("nodes") or [], values)
                if not applied:
                    return {"success": True, "message": "No changes to apply", "updated": False, "applied": []}

                self.n8n.update_workflow(remote_id, workflow)
                self.store.update_instance_settings(instance["id"], workflow, credentials)
                self.activity_log.record(
                    instance["id"],
                    context.user_id,
                    ACTION_SETTINGS_UPDATED,
                    ActivityLogService.settings_details(instance, applied),
                )
                return {
                    "success": True,
                    "message": "Workflow settings updated",
                    "updated": True,
                    "applied": applied,
                }
