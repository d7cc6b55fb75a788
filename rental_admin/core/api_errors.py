"""
Standardized error classification for the duplicate hub.

Provides a unified error hierarchy for services and API handlers.
Each error type carries the HTTP status it maps to and structured
details for the response body.
"""

from typing import Optional, Dict, Any, List


class DuplicateHubError(Exception):
    """
    Base exception for all duplicate-hub errors.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code the API layer responds with
        details: Extra structured context merged into the response body
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status_code})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        payload = {
            "error": self.message,
            "error_type": self.__class__.__name__,
        }
        payload.update(self.details)
        return payload


class ValidationError(DuplicateHubError):
    """
    Request validation failed.

    Examples:
    - Missing or malformed ids
    - Self-merge attempted (source == target)
    - Merge commit without explicit confirmation
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Invalid request parameters",
        invalid_params: Optional[Dict[str, str]] = None,
    ):
        details = {"invalid_params": invalid_params} if invalid_params else None
        super().__init__(message=message, details=details)
        self.invalid_params = invalid_params or {}


class AuthenticationError(DuplicateHubError):
    """Missing, malformed, or expired admin bearer token."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message=message)


class ForbiddenError(DuplicateHubError):
    """Authenticated admin lacks the permission the endpoint requires."""

    status_code = 403

    def __init__(self, message: str = "Forbidden", permission: Optional[str] = None):
        details = {"required_permission": permission} if permission else None
        super().__init__(message=message, details=details)
        self.permission = permission


class NotFoundError(DuplicateHubError):
    """
    Requested resource not found.

    Used for missing cases, merge operations, users and admins.
    """

    status_code = 404

    def __init__(
        self,
        message: str = "Resource not found",
        resource_id: Optional[Any] = None,
    ):
        if resource_id is not None:
            message = f"{message}: {resource_id}"
        super().__init__(message=message)
        self.resource_id = resource_id


class MergeBlockedError(DuplicateHubError):
    """
    A blocking conflict prevents the merge commit.

    Carries the conflict list from the re-validated preview so the
    operator sees exactly what changed since the last preview.
    """

    status_code = 409

    def __init__(
        self,
        message: str = "Merge blocked by conflicts",
        conflicts: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message=message, details={"conflicts": conflicts or []})
        self.conflicts = conflicts or []


class RollbackExpiredError(DuplicateHubError):
    """The rollback window of a merge operation has closed."""

    status_code = 409

    def __init__(self, message: str = "Rollback window has expired", operation_id: Optional[int] = None):
        details = {"merge_operation_id": operation_id} if operation_id is not None else None
        super().__init__(message=message, details=details)


class RollbackAlreadyAppliedError(DuplicateHubError):
    """The merge operation was already rolled back."""

    status_code = 409

    def __init__(self, message: str = "Merge already rolled back", operation_id: Optional[int] = None):
        details = {"merge_operation_id": operation_id} if operation_id is not None else None
        super().__init__(message=message, details=details)


class RollbackConflictError(DuplicateHubError):
    """
    Rows recorded by the merge no longer point at the target account.

    Something reassigned them after the merge; restoring the rest would
    leave the source with an incomplete set of references.
    """

    status_code = 409

    def __init__(
        self,
        message: str = "Merged references changed since the merge",
        operation_id: Optional[int] = None,
        drifted_refs: Optional[Dict[str, List[int]]] = None,
    ):
        details: Dict[str, Any] = {"drifted_refs": drifted_refs or {}}
        if operation_id is not None:
            details["merge_operation_id"] = operation_id
        super().__init__(message=message, details=details)
        self.drifted_refs = drifted_refs or {}


class PartialFailureError(DuplicateHubError):
    """
    One of several reference-move steps failed.

    The committer reports partial progress in its result instead of raising;
    this type exists for callers that need to escalate a recorded partial
    failure (e.g. the resolve endpoint).
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        merge_operation_id: Optional[int] = None,
        moved_refs: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(
            message=message,
            details={
                "merge_operation_id": merge_operation_id,
                "moved_refs": moved_refs or [],
            },
        )
        self.merge_operation_id = merge_operation_id
        self.moved_refs = moved_refs or []


class ConfigurationError(DuplicateHubError):
    """
    Configuration error - missing required settings.

    Raised when an optional integration is used without its settings.
    """

    def __init__(self, message: str, missing_config: Optional[str] = None):
        super().__init__(message=message, status_code=500)
        self.missing_config = missing_config
