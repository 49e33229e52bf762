"""Call initiation, status and live-call control endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from ..core.security import MONITOR_ROLES, Principal, get_principal, require_roles
from ..schemas import calls as schemas
from ..services.calls import CallControlService
from ..services.runtime import get_call_service

router = APIRouter(tags=["calls"])


@router.post("/call", response_model=schemas.InitiateCallResponse, status_code=status.HTTP_201_CREATED)
async def initiate_call(
    payload: schemas.InitiateCallRequest,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> schemas.InitiateCallResponse:
    """Place an outbound call; endpoints may still be null and arrive later as ``call:connected``."""

    result = await service.initiate(
        principal,
        lead_id=payload.lead_id,
        phone=payload.phone_number,
        campaign_id=payload.campaign_id,
        agent_id=payload.agent_id,
    )
    return schemas.InitiateCallResponse(
        call=schemas.CallOut.model_validate(result.call),
        external_call=result.provider_call.as_dict(),
        listen_url=result.listen_url,
        control_url=result.control_url,
    )


@router.get("/calls", response_model=schemas.CallListResponse)
async def list_calls(
    status_filter: str | None = Query(default=None, alias="status"),
    campaign_id: str | None = Query(default=None, alias="campaignId"),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> schemas.CallListResponse:
    calls = await service.list_calls(principal, status=status_filter, campaign_id=campaign_id, limit=limit)
    return schemas.CallListResponse(count=len(calls), calls=[schemas.CallOut.model_validate(c) for c in calls])


@router.get("/calls/active", response_model=schemas.ActiveCallsResponse)
async def active_calls(
    _: Principal = Depends(require_roles(*MONITOR_ROLES)),
    service: CallControlService = Depends(get_call_service),
) -> schemas.ActiveCallsResponse:
    """Calls still in flight, with their live session state."""

    items = await service.active()
    calls = [
        schemas.ActiveCall(call=schemas.CallOut.model_validate(item["call"]), session=item["session"])
        for item in items
    ]
    return schemas.ActiveCallsResponse(count=len(calls), calls=calls)


@router.get("/call/{call_id}", response_model=schemas.CallStatusResponse)
async def get_call(
    call_id: str,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> schemas.CallStatusResponse:
    result = await service.get_status(call_id, principal)
    return schemas.CallStatusResponse(
        call=schemas.CallOut.model_validate(result["call"]),
        control_endpoint=result["controlEndpoint"],
        session=result["session"],
        provider=result["provider"],
    )


@router.get("/call/{call_id}/transcript", response_model=schemas.TranscriptResponse)
async def get_transcript(
    call_id: str,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> schemas.TranscriptResponse:
    transcript = await service.transcript(call_id, principal)
    return schemas.TranscriptResponse(call_id=call_id, transcript=transcript)


@router.get("/call/{call_id}/listen")
async def listen(
    call_id: str,
    principal: Principal = Depends(require_roles(*MONITOR_ROLES)),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    """Monitor URL for a live call."""

    return {"success": True, **await service.listen(call_id, principal)}


@router.post("/call/{call_id}/end")
async def end_call(
    call_id: str,
    payload: schemas.ControlTarget | None = None,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    return await service.end(call_id, principal, control_url=payload.control_url if payload else None)


@router.post("/call/{call_id}/whisper")
async def whisper(
    call_id: str,
    payload: schemas.MessageCommandRequest,
    principal: Principal = Depends(require_roles(*MONITOR_ROLES)),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    """Instruct the assistant without the customer hearing it."""

    return await service.whisper(call_id, payload.message, principal, control_url=payload.control_url)


@router.post("/call/{call_id}/barge")
async def barge(
    call_id: str,
    payload: schemas.MessageCommandRequest,
    principal: Principal = Depends(require_roles(*MONITOR_ROLES)),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    """Have the assistant say something to the customer."""

    return await service.barge(call_id, payload.message, principal, control_url=payload.control_url)


@router.post("/call/{call_id}/transfer")
async def transfer(
    call_id: str,
    payload: schemas.TransferRequest,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    return await service.transfer(call_id, payload.destination, principal, control_url=payload.control_url)


@router.post("/call/{call_id}/control")
async def control(
    call_id: str,
    payload: schemas.ControlRequest,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> dict[str, Any]:
    return await service.control(call_id, payload.control, principal, control_url=payload.control_url)


@router.patch("/call/{call_id}/disposition", response_model=schemas.CallOut)
async def set_disposition(
    call_id: str,
    payload: schemas.DispositionRequest,
    principal: Principal = Depends(get_principal),
    service: CallControlService = Depends(get_call_service),
) -> schemas.CallOut:
    """Record the wrap-up outcome for a finished call."""

    call = await service.disposition(
        call_id,
        principal,
        disposition=payload.disposition,
        notes=payload.notes,
        next_callback=payload.next_callback,
    )
    return schemas.CallOut.model_validate(call)
