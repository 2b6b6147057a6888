"""Workflow provisioning endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.workflow import (
    ActivateRequest,
    ActivationResponse,
    ExecutionsResponse,
    OperationResponse,
    SettingsRequest,
    SettingsResponse,
    TenantContext,
)
from services.provisioning_service import ProvisioningService
from api.dependencies import get_provisioning_service, get_tenant_context

router = APIRouter(prefix="/api/workflows", tags=["workflows"])


@router.post("/{template_id}/activate", status_code=201, response_model=ActivationResponse)
def activate_workflow(
    template_id: str,
    request: Optional[ActivateRequest] = None,
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Clone a template into the caller's (or a target) tenant and activate it."""
    request = request or ActivateRequest()
    result = service.activate(
        template_id,
        context,
        target_tenant_id=request.tenant_id,
        credentials=request.credentials,
    )
    return ActivationResponse(**result)


@router.post("/{instance_id}/start", response_model=OperationResponse)
def start_workflow(
    instance_id: str,
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Re-activate an existing workflow instance."""
    return service.activate_instance(instance_id, context)


@router.post("/{instance_id}/deactivate", response_model=OperationResponse)
def deactivate_workflow(
    instance_id: str,
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Deactivate a workflow instance."""
    return service.deactivate(instance_id, context)


@router.delete("/{instance_id}", response_model=OperationResponse)
def delete_workflow(
    instance_id: str,
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Delete a workflow instance from n8n and the database."""
    return service.delete(instance_id, context)


@router.put("/{instance_id}/settings", response_model=SettingsResponse)
def update_workflow_settings(
    instance_id: str,
    request: SettingsRequest,
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Apply node settings and credentials to a workflow instance."""
    return service.update_settings(instance_id, context, request.settings)


@router.get("/{instance_id}/executions", response_model=ExecutionsResponse)
def list_executions(
    instance_id: str,
    limit: int = Query(5, ge=1, le=100),
    context: TenantContext = Depends(get_tenant_context),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Latest executions of a workflow instance."""
    return {"success": True, "executions": service.list_executions(instance_id, context, limit)}
