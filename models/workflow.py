"""Workflow provisioning models."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

GLOBAL_ADMIN_ROLE = "global_admin"


class TenantContext(BaseModel):
    """Identity of the caller, resolved upstream and immutable for one operation."""
    model_config = ConfigDict(frozen=True)

    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_global_admin(self) -> bool:
        return self.role == GLOBAL_ADMIN_ROLE


class ActivateRequest(BaseModel):
    """Workflow activation request."""
    tenant_id: Optional[str] = None
    credentials: Optional[Dict[str, str]] = None


class WorkflowInstanceResponse(BaseModel):
    """Provisioned workflow instance."""
    id: str
    name: str
    n8n_workflow_id: Optional[str] = None
    tenant_id: str
    company_name: Optional[str] = None
    folder: Optional[str] = None
    active: bool
    template_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ActivationResponse(BaseModel):
    """Activation result."""
    success: bool = True
    message: str
    workflow: WorkflowInstanceResponse
    # Only returned when the instance is first provisioned
    webhook_secret: Optional[str] = None


class OperationResponse(BaseModel):
    """Result of deactivate/delete/start."""
    success: bool = True
    message: str


class ExecutionSummary(BaseModel):
    """Summary of one n8n execution."""
    id: Optional[Any] = None
    workflow_id: Optional[Any] = None
    status: Optional[str] = None
    mode: Optional[str] = None
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None
    finished: Optional[bool] = None
    error: Optional[Dict[str, Any]] = None


class ExecutionsResponse(BaseModel):
    """Execution history for a workflow instance."""
    success: bool = True
    executions: List[ExecutionSummary] = Field(default_factory=list)


class SettingsRequest(BaseModel):
    """Settings keyed ``{nodeId}_{field}``, e.g. ``{"3_api_key": "sk-..."}``."""
    settings: Dict[str, Optional[str]]


class SettingsResponse(BaseModel):
    """Response model for a settings update."""
    success: bool = True
    message: str
    updated: bool
    applied: List[str] = Field(default_factory=list)
