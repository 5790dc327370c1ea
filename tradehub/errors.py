"""
Failure taxonomy shared by the attendance and ledger managers.

Every rejection carries a stable machine-checkable ``kind`` and a human-readable
message. HTTP status codes are a fixed mapping from kind.
"""
import functools
import inspect
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError
from sqlalchemy.exc import SQLAlchemyError


class CRMError(Exception):
    kind = "internal"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        errors: Optional[Dict[str, List[str]]] = None,
        **context: Any,
    ):
        self.message = message or self.default_message
        self.errors = errors
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "kind": self.kind, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        body.update(self.context)
        return body


class Unauthenticated(CRMError):
    kind = "unauthenticated"
    status_code = 401
    default_message = "Unauthenticated"


class Forbidden(CRMError):
    kind = "forbidden"
    status_code = 403
    default_message = "Access denied"


class NotFound(CRMError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class ValidationFailed(CRMError):
    kind = "validation_failed"
    status_code = 422
    default_message = "Validation failed"


class InvalidCoordinate(ValidationFailed):
    kind = "invalid_coordinate"
    default_message = "Location data must be valid coordinates"


class InvalidState(CRMError):
    kind = "invalid_state"
    status_code = 400
    reason = "invalid_state"
    default_message = "Action is not allowed in the current state"

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class AlreadyStarted(InvalidState):
    reason = "already_started"
    default_message = "You have already started your attendance for today"


class AlreadyCompleted(InvalidState):
    reason = "already_completed"
    default_message = "You have already completed your attendance for today"


class NoActiveSession(InvalidState):
    reason = "no_active_session"
    default_message = "No active attendance found. Please start your attendance first."


class NotUploadable(InvalidState):
    reason = "not_uploadable"
    default_message = "Ledger request is not in pending status"


class InvalidTransition(InvalidState):
    reason = "invalid_transition"
    default_message = "Requested status change is not allowed"


class TimeWindowClosed(CRMError):
    kind = "time_window_closed"
    status_code = 400
    default_message = "Attendance window is closed"


class OutOfRange(CRMError):
    kind = "out_of_range"
    status_code = 400
    default_message = "Location is too far from office"


class FileRejected(CRMError):
    kind = "file_rejected"
    status_code = 400
    default_message = "File rejected"


class FileUnavailable(CRMError):
    kind = "file_unavailable"
    status_code = 400
    default_message = "Ledger file is not available for download"


class Conflict(CRMError):
    kind = "conflict"
    status_code = 400
    default_message = "The record was changed by another request, please retry"


class InternalError(CRMError):
    kind = "internal"
    status_code = 500
    default_message = "Internal server error"


# Failures of the storage or database layer that become InternalError
INFRASTRUCTURE_ERRORS = (SQLAlchemyError, OSError, AzureError)


def operation(name: str):
    """
    Operation boundary for manager methods.

    Business rejections (CRMError) pass through untouched. Infrastructure
    failures roll back the manager's session, get logged with the principal and
    entity id, and surface as InternalError.
    """
    def decorator(fn):
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(self, principal, *args, **kwargs):
            try:
                return fn(self, principal, *args, **kwargs)
            except CRMError:
                raise
            except INFRASTRUCTURE_ERRORS as e:
                self.db.rollback()
                entity_id = signature.bind_partial(self, principal, *args, **kwargs).arguments.get("ident")
                self.log.error(
                    "operation_failed",
                    operation=name,
                    user_id=str(getattr(principal, "id", None)),
                    entity_id=str(entity_id) if entity_id is not None else None,
                    error=str(e),
                    exc_info=True,
                )
                raise InternalError() from e

        return wrapper

    return decorator
