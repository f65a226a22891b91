"""
Error taxonomy for pruning runs, with actionable guidance for operators.

Fatal errors (FetchError, PolicyError, AuthorizationError) abort the run before
any mutation and produce a non-zero exit. DeleteError is recovered: it is
recorded against a single item of the confirm phase and the batch continues.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    POLICY = "policy"
    RESOURCE = "resource"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        suggestions: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class FetchError(ActionableError):
    """The metadata or workload collaborator was unreachable or returned malformed records."""


class PolicyError(ActionableError):
    """Invalid retention policy parameters."""


class DeleteError(ActionableError):
    """A single delete in the confirm phase failed."""


class AuthorizationError(ActionableError):
    """The caller lacks the rights required to prune."""


def create_metadata_connection_error(host: str, port: int, error: Exception) -> FetchError:
    """Create actionable error for metadata store (MongoDB) failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify MongoDB is running at {host}:{port}",
        "Check network connectivity to MongoDB",
        "Check the metadata section in config.yaml",
        "Verify MONGODB_PASSWORD environment variable is set (if required)",
    ]

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if MongoDB is experiencing high load")
        suggestions.insert(2, "Increase metadata.timeout in config.yaml")

    return FetchError(
        message=f"Failed to read image metadata from MongoDB at {host}:{port}",
        category=ErrorCategory.TIMEOUT if "timed out" in error_str else ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details={
            "host": host,
            "port": port,
            "error_type": type(error).__name__,
            "error_message": str(error),
        },
    )


def create_malformed_record_error(collection: str, record_id: Any, reason: str) -> FetchError:
    """Create actionable error for a metadata record that cannot be parsed"""
    return FetchError(
        message=f"Malformed record in '{collection}': {record_id}",
        category=ErrorCategory.RESOURCE,
        suggestions=[
            "Inspect the record directly in MongoDB",
            "Verify the writer of this collection uses the expected schema",
        ],
        details={"collection": collection, "record": record_id, "reason": reason},
    )


def create_kubernetes_error(operation: str, error: Exception) -> ActionableError:
    """Create actionable error for Kubernetes API failures.

    Forbidden/unauthorized responses become AuthorizationError, anything else
    is a FetchError: without the workload references the in-use safety
    override cannot be computed.
    """
    error_str = str(error).lower()
    status = getattr(error, "status", None)
    forbidden = status in (401, 403) or "forbidden" in error_str or "unauthorized" in error_str

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check if running in-cluster or using kubeconfig",
        "Verify RBAC permissions to list pods and workload controllers",
    ]

    if forbidden:
        suggestions.insert(0, "Grant the service account list access on pods, deployments and jobs")
        return AuthorizationError(
            message=f"Kubernetes operation not permitted: {operation}",
            category=ErrorCategory.PERMISSION,
            suggestions=suggestions,
            details={"operation": operation, "error_type": type(error).__name__, "error_message": str(error)},
        )

    return FetchError(
        message=f"Kubernetes operation failed: {operation}",
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details={"operation": operation, "error_type": type(error).__name__, "error_message": str(error)},
    )


def create_policy_error(field: str, value: Any, reason: str) -> PolicyError:
    """Create actionable error for retention policy validation failures"""
    suggestions = [f"Check the value passed for '{field}'"]

    if "revisions" in field:
        suggestions.append("--keep-tag-revisions must be a non-negative integer")
    elif "younger" in field:
        suggestions.append("--keep-younger-than takes a duration such as 0, 90s, 60m, 1h30m or 7d")
    elif "untagged" in field:
        suggestions.append("untagged images policy must be one of: age, prune, keep")

    return PolicyError(
        message=f"Invalid retention policy: '{field}' {reason}",
        category=ErrorCategory.POLICY,
        suggestions=suggestions,
        details={"field": field, "value": value},
    )


def create_authorization_error(operation: str, error: Optional[Exception] = None) -> AuthorizationError:
    """Create actionable error for missing prune rights"""
    details = {"operation": operation}
    if error is not None:
        details["error_type"] = type(error).__name__
        details["error_message"] = str(error)

    return AuthorizationError(
        message=f"Not authorized to {operation}",
        category=ErrorCategory.PERMISSION,
        suggestions=[
            "Verify the MongoDB user has remove/update rights on the image collections",
            "Verify the process can write to the registry storage root",
            "Run the pruner with the registry's service account",
        ],
        details=details,
    )


def create_delete_error(kind: str, identifier: str, error: Exception, repository: Optional[str] = None) -> DeleteError:
    """Create a per-item error for the confirm phase"""
    error_str = str(error).lower()
    timed_out = isinstance(error, TimeoutError) or "timed out" in error_str
    target = f"{kind} {identifier}" + (f" in {repository}" if repository else "")

    return DeleteError(
        message=f"Failed to delete {target}",
        category=ErrorCategory.TIMEOUT if timed_out else ErrorCategory.RESOURCE,
        suggestions=["Re-run the confirm phase; already removed items are reported as no-ops"],
        details={"error_type": type(error).__name__, "error_message": str(error)},
    )


def create_storage_scan_error(root: str, error: Exception) -> ActionableError:
    """Create actionable error for a failed scan of the registry storage root"""
    if isinstance(error, PermissionError):
        return create_authorization_error(f"read registry storage at {root}", error)

    return FetchError(
        message=f"Failed to scan registry storage at {root}",
        category=ErrorCategory.RESOURCE,
        suggestions=[
            "Verify registry.storage_root (or REGISTRY_STORAGE_ROOT) points at the registry's storage",
            "Check that the storage volume is mounted",
            "Set storage.sweep_unreferenced: false to prune from image records only",
        ],
        details={"root": root, "error_type": type(error).__name__, "error_message": str(error)},
    )
