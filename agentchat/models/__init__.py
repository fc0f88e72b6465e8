"""
Data Models and Schemas

Pydantic models for data validation and serialization, and the error
taxonomy shared by every engine.
"""

from agentchat.models.errors import (
    RoutingError,
    InvalidInput,
    NotFound,
    NotActive,
    InvalidStateTransition,
    UpstreamError,
    UpstreamTimeout,
    PersistenceError,
    ConcurrencyConflict
)
from agentchat.models.schemas import (
    IntentResult,
    ContextSwitchResult,
    TicketClassification,
    AutoRouteResult,
    APIResponse
)

__all__ = [
    "RoutingError",
    "InvalidInput",
    "NotFound",
    "NotActive",
    "InvalidStateTransition",
    "UpstreamError",
    "UpstreamTimeout",
    "PersistenceError",
    "ConcurrencyConflict",
    "IntentResult",
    "ContextSwitchResult",
    "TicketClassification",
    "AutoRouteResult",
    "APIResponse"
]
