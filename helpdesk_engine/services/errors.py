"""
Helpdesk Engine Errors

Every failure a caller can see. All are recoverable and request-scoped:
precondition failures are raised before any write, failures inside a
transaction roll it back entirely.
"""


class EngineError(Exception):
    """Base class for caller-facing engine errors."""
    pass


class NotFound(EngineError):
    """Ticket or technician does not exist."""
    pass


class Forbidden(EngineError):
    """Actor is neither the assignee nor holds the ownership override."""
    pass


class TechnicianUnavailable(EngineError):
    """Technician is offline or cannot handle tickets."""
    pass


class CapacityExceeded(EngineError):
    """Technician already carries max_capacity active tickets."""
    pass


class InvalidTransition(EngineError):
    """Requested status change is not in the status graph."""
    pass


class AlreadyClosed(EngineError):
    """Ticket is CLOSED; nothing more can happen to it."""
    pass


class ValidationError(EngineError):
    """Required input missing or malformed."""
    pass


class Unavailable(EngineError):
    """Storage timed out or kept conflicting. Retry later."""
    pass
