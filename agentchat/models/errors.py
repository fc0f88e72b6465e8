from typing import Optional, Dict, Any


class RoutingError(Exception):
    """Base class for all errors raised by the routing core"""

    status_code = 500
    code = "routing_error"

    def __init__(self, message: str,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInput(RoutingError):
    """Malformed or missing input; nothing was mutated"""

    status_code = 400
    code = "invalid_input"


class NotFound(RoutingError):
    """Referenced entity does not exist or is not owned by the actor"""

    status_code = 404
    code = "not_found"


class NotActive(RoutingError):
    """Operation attempted on a conversation that is not active"""

    status_code = 409
    code = "not_active"


class InvalidStateTransition(RoutingError):
    status_code = 409
    code = "invalid_state_transition"


class UpstreamError(RoutingError):
    """An external collaborator (LLM, store) failed"""

    status_code = 502
    code = "upstream_error"


class UpstreamTimeout(UpstreamError):
    """An external collaborator exceeded its deadline. Safe to retry."""

    status_code = 504
    code = "upstream_timeout"


class PersistenceError(RoutingError):
    """A store write failed after the routing decision was made"""

    status_code = 503
    code = "persistence_error"


class ConcurrencyConflict(PersistenceError):
    """Optimistic version check failed: another writer got there first"""

    status_code = 409
    code = "concurrency_conflict"
