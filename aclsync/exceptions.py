"""Custom exception hierarchy for aclsync."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for reports and logs."""

    # Datastore errors
    GRANT_SOURCE_UNAVAILABLE = "GRANT_SOURCE_UNAVAILABLE"
    INVALID_PERMISSION_LEVEL = "INVALID_PERMISSION_LEVEL"

    # Node errors
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    NODE_MISSING = "NODE_MISSING"

    # ACL tool errors
    ACL_TOOL_ERROR = "ACL_TOOL_ERROR"

    # Principal errors
    EXCLUDED_PRINCIPAL = "EXCLUDED_PRINCIPAL"

    # Setup errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AclSyncException(Exception):
    """
    Base exception for all aclsync errors.

    Provides structured error records with:
    - Human-readable message
    - Machine-readable error code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for run reports.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class GrantSourceUnavailableError(AclSyncException):
    """The permission datastore cannot be reached. Fatal for the run."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(message, ErrorCode.GRANT_SOURCE_UNAVAILABLE, details=details)


class InvalidPermissionLevelError(AclSyncException):
    """A stored grant carries a permission encoding we do not recognize."""

    def __init__(self, value: Any, node_id: Optional[int] = None, principal: Optional[str] = None):
        super().__init__(
            f"Unrecognized permission level: {value!r}",
            ErrorCode.INVALID_PERMISSION_LEVEL,
            details={"value": value, "node_id": node_id, "principal": principal}
        )


class NodeNotFoundError(AclSyncException):
    """Folder id not found in the datastore."""

    def __init__(self, node_id: int):
        super().__init__(
            f"Folder not found: {node_id}",
            ErrorCode.NODE_NOT_FOUND,
            details={"node_id": node_id}
        )


class NodeMissingError(AclSyncException):
    """Folder exists in the datastore but not on disk."""

    def __init__(self, node_id: Optional[int], physical_path: str):
        super().__init__(
            f"Folder does not exist on filesystem: {physical_path}",
            ErrorCode.NODE_MISSING,
            details={"node_id": node_id, "physical_path": physical_path}
        )


class AclToolError(AclSyncException):
    """A single call to the ACL tool failed."""

    def __init__(self, message: str, command: Optional[list] = None, stderr: str = ""):
        details: Dict[str, Any] = {}
        if command:
            details["command"] = " ".join(str(c) for c in command)
        if stderr:
            details["stderr"] = stderr.strip()[-500:]
        super().__init__(message, ErrorCode.ACL_TOOL_ERROR, details=details)


class ExcludedPrincipalError(AclSyncException):
    """Operation requested for a system/service identity that is never handled."""

    def __init__(self, principal: str):
        super().__init__(
            f"Principal '{principal}' is excluded (system/service user)",
            ErrorCode.EXCLUDED_PRINCIPAL,
            details={"principal": principal}
        )


class ConfigurationError(AclSyncException):
    """Settings or host prerequisites are invalid for a run."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR)
