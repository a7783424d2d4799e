"""
Procurement Workflow Hub - Workflow Errors

Exception taxonomy for workflow transitions. Routers translate these into HTTP
responses; nothing in the notification layer raises them.
"""

from typing import Dict, Any, Optional


class WorkflowError(Exception):
    """Base exception for workflow transition errors."""
    code = "WF_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WorkflowError):
    """
    Malformed or missing input: bad reason code, missing remarks, unknown
    legacy status, PR not eligible for PO creation. Never retried.
    """
    code = "WF_VALIDATION"


class Forbidden(WorkflowError):
    """Raised when the actor's role is not allowed at the stage."""
    code = "WF_FORBIDDEN"


class EntityNotFoundError(WorkflowError):
    """Raised when the target entity does not exist for the company."""
    code = "WF_NOT_FOUND"


class StaleStateError(WorkflowError):
    """
    Optimistic concurrency conflict. The entity moved since the caller read it;
    the caller should refetch and may retry.
    """
    code = "WF_STALE_STATE"


class PartialFailure(WorkflowError):
    """
    A multi-step operation could not complete and was rolled back.
    No partial state is visible; the caller should retry the whole operation.
    """
    code = "WF_PARTIAL_FAILURE"
