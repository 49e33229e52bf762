"""Voice provider webhook ingress."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.security import verify_webhook
from ..services.runtime import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhook")
async def receive_webhook(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict[str, bool]:
    """Apply a provider event. Anything that passes verification is acknowledged."""

    body = await request.body()
    if not verify_webhook(request.headers, body):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body or b"null")
    except ValueError:
        logger.info("Ignoring webhook with non-JSON body")
        return {"success": True}

    await runtime.relay.ingest(payload)
    return {"success": True}
