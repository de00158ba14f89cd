"""
Order Engine Errors

Every failure the engine surfaces carries a stable code and a message
that can be shown to the actor as-is.
"""
from typing import Any, Dict, Optional


class OrderEngineError(Exception):
    """Base class for all order engine failures."""
    code = "order_engine_error"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


# =============================================================================
# VALIDATION (malformed input, recovered locally)
# =============================================================================

class ValidationError(OrderEngineError):
    """Malformed input. No transition is attempted."""
    code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None, **details: Any):
        super().__init__(message, field_errors=field_errors, **details)
        self.field_errors = field_errors or {}


class EmptyMessageError(ValidationError):
    """Revision message was empty after trimming."""
    code = "empty_message"

    def __init__(self, message: str = "Revision message must not be empty"):
        super().__init__(message, field_errors={"message": "required"})


# =============================================================================
# GUARDS (transition not permitted from current state)
# =============================================================================

class GuardError(OrderEngineError):
    """A requested transition is not permitted. Names the rule that blocked it."""
    code = "guard_failed"
    http_status = 409

    def __init__(self, message: str, current_status: Any = None, action: Any = None, rule: Optional[str] = None):
        super().__init__(
            message,
            current_status=getattr(current_status, "value", current_status),
            action=getattr(action, "value", action),
            rule=rule,
        )
        self.current_status = current_status
        self.action = action
        self.rule = rule


class DeadlineExpiredError(GuardError):
    code = "deadline_expired"


class RevisionLimitError(GuardError):
    code = "revision_limit_reached"


class RefundNotEligibleError(GuardError):
    code = "refund_not_eligible"


# =============================================================================
# CONCURRENCY / TRANSPORT / AUTHORIZATION
# =============================================================================

class ConflictError(OrderEngineError):
    """
    A conditional write lost the race: the stored status changed since it was read.
    Callers re-fetch and re-present; they never retry the original transition blindly.
    """
    code = "conflict"
    http_status = 409

    def __init__(self, message: str, order_id: Optional[str] = None, expected_status: Any = None,
                 current_status: Any = None):
        super().__init__(
            message,
            order_id=order_id,
            expected_status=getattr(expected_status, "value", expected_status),
            current_status=getattr(current_status, "value", current_status),
        )
        self.order_id = order_id
        self.expected_status = expected_status
        self.current_status = current_status


class TransportError(OrderEngineError):
    """Persistence or network unavailable. Nothing was applied; safe to retry."""
    code = "transport_error"
    http_status = 503


class AuthorizationError(OrderEngineError):
    """Actor role or ownership does not allow the operation. Never retried."""
    code = "forbidden"
    http_status = 403


class NotFoundError(OrderEngineError):
    code = "not_found"
    http_status = 404
