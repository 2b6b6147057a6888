"""Services module for the Automara provisioning core."""

from .n8n_client import N8nClient
from .activity_log_service import ActivityLogService
from .provisioning_service import ProvisioningService
from .workflow_store import WorkflowStore

__all__ = [
    "N8nClient",
    "ActivityLogService",
    "ProvisioningService",
    "WorkflowStore"
]
