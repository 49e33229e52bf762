"""Supervisor views of connected agents."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..core.errors import NotFoundError
from ..core.security import MONITOR_ROLES, Principal, require_roles
from ..services.runtime import Runtime, get_runtime

router = APIRouter(tags=["agents"])


@router.get("/agents/online")
async def online_agents(
    _: Principal = Depends(require_roles(*MONITOR_ROLES)),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    users = runtime.presence.online()
    return {"success": True, "count": len(users), "agents": users}


@router.post("/agents/{agent_id}/disconnect")
async def disconnect_agent(
    agent_id: str,
    _: Principal = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    """Close an agent's real-time connection; they are marked offline as it closes."""

    if not await runtime.presence.force_disconnect(agent_id):
        raise NotFoundError(f"Agent {agent_id} is not connected")
    return {"success": True, "agentId": agent_id}
