"""
Intuit webhook receiver.

The signature is computed over the raw body, so the body is read as bytes
before any JSON parsing.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request

from syncengine.connectors.webhook_handler import (
    SIGNATURE_HEADER,
    WebhookPayloadInvalid,
    WebhookSignatureInvalid,
)
from syncengine.services import SyncServices, get_services
from syncengine.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/quickbooks")
async def receive_quickbooks_webhook(
    request: Request,
    services: SyncServices = Depends(get_services),
):
    raw_body = await request.body()
    handler = services.webhook_handler

    try:
        handler.ensure_signature(raw_body, request.headers.get(SIGNATURE_HEADER))
    except WebhookSignatureInvalid as e:
        raise HTTPException(status_code=401, detail=str(e))

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning("webhook_body_not_json", error=str(e))
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")

    try:
        result = await handler.process_webhook(payload)
    except WebhookPayloadInvalid as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "data": result.model_dump(mode="json")}
