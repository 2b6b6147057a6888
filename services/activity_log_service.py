"""
Activity log service for workflow lifecycle transitions.

This module builds the detail payloads recorded for each transition and
appends them to the append-only activity log through the workflow store.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ACTION_ACTIVATED = "activated"
ACTION_DEACTIVATED = "deactivated"
ACTION_DELETED = "deleted"
ACTION_SETTINGS_UPDATED = "settings_updated"


class ActivityLogService:
    """Service for appending workflow activity entries."""

    def __init__(self, store):
        self.store = store

    @staticmethod
    def activation_details(
        template: Dict[str, Any],
        company_name: str,
        n8n_workflow_id: Optional[str],
        folder_name: Optional[str],
        resumed: bool = False
    ) -> Dict[str, Any]:
        """
        Build details for an activation.

        Args:
            template: Template row the instance was cloned from
            company_name: Tenant company name
            n8n_workflow_id: Remote workflow id
            folder_name: n8n folder (tag) the instance lives in
            resumed: True when an existing instance was re-activated

        Returns:
            Details dictionary
        """
        details = {
            "template_id": template.get("id"),
            "template_name": template.get("name"),
            "company_name": company_name,
            "n8n_workflow_id": n8n_workflow_id,
            "folder_name": folder_name,
            "timestamp": datetime.utcnow().isoformat()
        }
        if resumed:
            details["resumed"] = True
        return details

    @staticmethod
    def deactivation_details(instance: Dict[str, Any]) -> Dict[str, Any]:
        """Build details for a deactivation."""
        return {
            "workflow_name": instance.get("name"),
            "n8n_workflow_id": instance.get("n8n_workflow_id"),
            "status": "inactive",
            "timestamp": datetime.utcnow().isoformat()
        }

    @staticmethod
    def deletion_details(instance: Dict[str, Any]) -> Dict[str, Any]:
        """Build details for a deletion, captured before the row is removed."""
        return {
            "workflow_name": instance.get("name"),
            "n8n_workflow_id": instance.get("n8n_workflow_id"),
            "was_active": bool(instance.get("active")),
            "template_id": instance.get("parent_workflow_id"),
            "timestamp": datetime.utcnow().isoformat()
        }

    @staticmethod
    def settings_details(instance: Dict[str, Any], applied: List[str]) -> Dict[str, Any]:
        """Build details for a settings update. Only setting keys are recorded, never values."""
        return {
            "workflow_name": instance.get("name"),
            "n8n_workflow_id": instance.get("n8n_workflow_id"),
            "updated_settings": list(applied),
            "timestamp": datetime.utcnow().isoformat()
        }

    def record(
        self,
        workflow_id: str,
        user_id: Optional[str],
        action: str,
        details: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Append an entry; returns the stored row."""
        entry = self.store.insert_activity(workflow_id, user_id, action, details)
        logger.info("Workflow %s %s by user %s", workflow_id, action, user_id or "system")
        return entry
