"""
Custom Exceptions - Domain-specific Error Handling
==================================================
Every error carries a machine-readable code and an HTTP status so the API
layer can map it without knowing the concrete type.
"""

from typing import Any


class HarborScanException(Exception):
    """
    Base exception for all scan engine errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code for API responses
        details: Additional context (e.g., request_id, image, tool)
    """

    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API-friendly dictionary."""
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# JOB EXCEPTIONS
# =============================================================================

class ScanJobNotFoundException(HarborScanException):
    """Raised when a request id is unknown or has aged out of the registry."""

    http_status = 404

    def __init__(self, request_id: str):
        super().__init__(
            message=f"Scan job '{request_id}' not found",
            error_code="SCAN_JOB_NOT_FOUND",
            details={"request_id": request_id},
        )
        self.request_id = request_id


class ScanRecordNotFoundException(HarborScanException):
    """Raised when a persisted scan record does not exist."""

    http_status = 404

    def __init__(self, scan_id: str):
        super().__init__(
            message=f"Scan with ID '{scan_id}' not found",
            error_code="SCAN_NOT_FOUND",
            details={"scan_id": scan_id},
        )
        self.scan_id = scan_id


class DuplicateScanJobException(HarborScanException):
    """Raised when a request id is registered twice."""

    http_status = 409

    def __init__(self, request_id: str):
        super().__init__(
            message=f"Scan job '{request_id}' is already registered",
            error_code="SCAN_JOB_EXISTS",
            details={"request_id": request_id},
        )
        self.request_id = request_id


class InvalidScanRequestException(HarborScanException):
    """Raised when a scan request fails validation beyond the schema."""

    http_status = 422

    def __init__(self, reason: str, field: str | None = None):
        super().__init__(
            message=f"Invalid scan request: {reason}",
            error_code="INVALID_SCAN_REQUEST",
            details={"reason": reason, "field": field},
        )
        self.reason = reason
        self.field = field


# =============================================================================
# IMAGE EXCEPTIONS
# =============================================================================

class ImageResolutionException(HarborScanException):
    """Raised when an image reference cannot be resolved to a digest."""

    http_status = 422

    def __init__(self, image: str, reason: str):
        super().__init__(
            message=f"Could not resolve image '{image}': {reason}",
            error_code="IMAGE_RESOLUTION_FAILED",
            details={"image": image, "reason": reason},
        )
        self.image = image
        self.reason = reason


class ArtifactAcquisitionException(HarborScanException):
    """Raised when the image artifact cannot be downloaded or exported."""

    def __init__(
        self,
        image: str,
        reason: str,
        error_code: str = "ARTIFACT_ACQUISITION_FAILED",
    ):
        super().__init__(
            message=f"Failed to acquire image '{image}': {reason}",
            error_code=error_code,
            details={"image": image, "reason": reason},
        )
        self.image = image
        self.reason = reason


class ArtifactAcquisitionTimeoutException(ArtifactAcquisitionException):
    """Raised when artifact acquisition exceeds its time budget."""

    def __init__(self, image: str, timeout_seconds: float):
        super().__init__(
            image=image,
            reason=f"exceeded timeout of {timeout_seconds:g} seconds",
            error_code="ARTIFACT_ACQUISITION_TIMEOUT",
        )
        self.timeout_seconds = timeout_seconds


# =============================================================================
# SCAN EXECUTION EXCEPTIONS
# =============================================================================

class ScanSetupException(HarborScanException):
    """Raised when the per-scan working environment cannot be prepared."""

    def __init__(self, request_id: str, reason: str):
        super().__init__(
            message=f"Scan environment setup failed: {reason}",
            error_code="SCAN_SETUP_FAILED",
            details={"request_id": request_id, "reason": reason},
        )
        self.request_id = request_id
        self.reason = reason


class CommandTimeoutException(HarborScanException):
    """Raised when an external command exceeds its timeout and is killed."""

    def __init__(self, command: list[str], timeout_seconds: float):
        super().__init__(
            message=f"Command '{command[0]}' timed out after {timeout_seconds:g} seconds",
            error_code="COMMAND_TIMEOUT",
            details={"command": command, "timeout_seconds": timeout_seconds},
        )
        self.command = command
        self.timeout_seconds = timeout_seconds


class ScannerExecutionException(HarborScanException):
    """Raised when a scanner tool exits abnormally or produces no report."""

    def __init__(
        self,
        tool: str,
        reason: str,
        exit_code: int | None = None,
        error_code: str = "SCANNER_ERROR",
    ):
        super().__init__(
            message=f"{tool} execution failed: {reason}",
            error_code=error_code,
            details={"tool": tool, "reason": reason, "exit_code": exit_code},
        )
        self.tool = tool
        self.reason = reason
        self.exit_code = exit_code


class ScannerTimeoutException(ScannerExecutionException):
    """Raised when a scanner tool exceeds its timeout."""

    def __init__(self, tool: str, timeout_seconds: float):
        super().__init__(
            tool=tool,
            reason=f"timed out after {timeout_seconds:g} seconds",
            error_code="SCANNER_TIMEOUT",
        )
        self.timeout_seconds = timeout_seconds


# =============================================================================
# DATABASE EXCEPTIONS
# =============================================================================

class DatabaseConnectionException(HarborScanException):
    """Raised when database connection fails."""

    http_status = 503

    def __init__(self, message: str = "Database connection failed"):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
        )


class DatabaseTransactionException(HarborScanException):
    """Raised when a database transaction fails."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Database transaction failed during {operation}: {reason}",
            error_code="DATABASE_TRANSACTION_ERROR",
            details={"operation": operation, "reason": reason},
        )
        self.operation = operation
