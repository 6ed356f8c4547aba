from __future__ import annotations

import traceback
from typing import Any

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"


class PlanSyncError(Exception):
    status_code = 500
    client_safe = False


class ValidationError(PlanSyncError):
    status_code = 400
    client_safe = True


class NotFound(PlanSyncError):
    status_code = 404
    client_safe = True


class VersionConflict(PlanSyncError):
    """The remote object changed since it was read (version tag mismatch)."""

    status_code = 409
    client_safe = True


class RemoteUnavailable(PlanSyncError):
    status_code = 502


class PartialFailure(PlanSyncError):
    """A move left the event in both collections; someone has to clean up."""

    status_code = 500
    client_safe = True

    def __init__(self, message: str, *, source_collection: str, target_collection: str) -> None:
        super().__init__(message)
        self.source_collection = source_collection
        self.target_collection = target_collection
        self.remediation = (
            f"Event exists in both {source_collection} and {target_collection}. "
            "Delete one copy manually; this operation will not be retried."
        )


class NothingToUndo(PlanSyncError):
    status_code = 404
    client_safe = True


class IncompleteAuditData(PlanSyncError):
    status_code = 422
    client_safe = True


class AuditWriteFailure(PlanSyncError):
    pass


class CacheInvalidationFailure(PlanSyncError):
    pass


def format_error_response(exc: BaseException, debug: bool = False) -> tuple[int, dict[str, Any]]:
    status = getattr(exc, "status_code", 500)
    client_safe = bool(getattr(exc, "client_safe", False)) or status < 500
    body: dict[str, Any] = {
        "success": False,
        "error": str(exc) if (debug or client_safe) else GENERIC_ERROR_MESSAGE,
    }
    if isinstance(exc, PartialFailure):
        body["remediation"] = exc.remediation
    if debug:
        body["type"] = type(exc).__name__
        body["details"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return status, body
