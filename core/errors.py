"""Error taxonomy for provisioning and credential operations."""

from typing import Any, Dict, Optional


class AutomaraError(Exception):
    """Base error carrying a stable code and an HTTP status."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses."""
        body: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AutomaraError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AutomaraError):
    code = "not_found"
    status_code = 404


class AuthorizationError(AutomaraError):
    code = "forbidden"
    status_code = 403


class TenantInactiveError(AuthorizationError):
    code = "tenant_inactive"


class ConflictError(AutomaraError):
    """Raised when a tenant already owns an instance of the template."""

    code = "conflict"
    status_code = 409

    def __init__(self, message: str, existing: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"workflow": existing} if existing else None)
        self.existing = existing


class RemoteEngineError(AutomaraError):
    """Failure talking to the workflow engine (network, timeout, non-2xx)."""

    code = "remote_engine_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        remote_status: Optional[int] = None,
        remote_message: Optional[str] = None,
    ):
        details: Dict[str, Any] = {}
        if endpoint:
            details["endpoint"] = endpoint
        if remote_status is not None:
            details["remote_status"] = remote_status
        if remote_message:
            details["remote_message"] = remote_message
        super().__init__(message, details)
        self.endpoint = endpoint
        self.remote_status = remote_status
        self.remote_message = remote_message


class ProvisioningError(AutomaraError):
    """Local persistence failure during a lifecycle operation."""

    code = "provisioning_error"
    status_code = 500


class ConfigurationError(RuntimeError):
    """Missing or invalid startup configuration."""
