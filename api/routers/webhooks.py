"""Inbound webhook endpoints with signature verification."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from services.provisioning_service import ProvisioningService
from api.dependencies import get_provisioning_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/{instance_id}", status_code=202)
async def receive_webhook(
    instance_id: str,
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_webhook_timestamp: Optional[str] = Header(None),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Accept a webhook call signed with the instance's signing secret."""
    if not x_webhook_signature or not x_webhook_timestamp:
        raise HTTPException(status_code=401, detail="Missing webhook signature or timestamp")

    # Signatures cover the raw body exactly as received
    body = await request.body()
    verified = await run_in_threadpool(
        service.verify_webhook, instance_id, body, x_webhook_signature, x_webhook_timestamp
    )
    if not verified:
        logger.warning("Rejected webhook for workflow %s", instance_id)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    execution = await run_in_threadpool(service.record_webhook, instance_id, body)
    return {
        "message": "Webhook received successfully",
        "workflow_id": instance_id,
        "execution_id": execution["id"],
    }
