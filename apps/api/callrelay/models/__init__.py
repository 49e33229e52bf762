"""Expose ORM models."""
from .call import Call, CallDirection, CallStatus
from .lead import Lead, LeadStatus
from .user import AgentStatus, User

__all__ = [
    "AgentStatus",
    "Call",
    "CallDirection",
    "CallStatus",
    "Lead",
    "LeadStatus",
    "User",
]
