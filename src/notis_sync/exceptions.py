"""Custom exceptions for the Notis storage and sync engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    NOTES_ROOT_UNAVAILABLE = 4005
    DATABASE_CORRUPTED = 4006
    INDEX_WRITE_FAILED = 4008

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    PATH_TRAVERSAL_DETECTED = 7005

    # Sync errors (8xxx)
    SYNC_FAILED = 8002
    WATCHER_FAILED = 8003

    # Legacy store errors (9xxx)
    LEGACY_STORE_UNAVAILABLE = 9004


class NotisError(Exception):
    """Base exception for all Notis storage errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class StorageError(NotisError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class NotesRootError(StorageError):
    """Raised when the notes root directory cannot be created or accessed.

    This is the one unrecoverable storage condition: no sync or migration
    pass can make progress without a writable root, so it always propagates.
    """

    def __init__(self, path: str, original_error: Optional[Exception] = None):
        super().__init__(
            f"Notes directory is not accessible: {path}",
            operation="notes_root",
            path=path,
            code=ErrorCode.NOTES_ROOT_UNAVAILABLE,
            original_error=original_error,
        )


class IndexStoreError(StorageError):
    """Raised when the notes index database cannot be written or read."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.INDEX_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=code,
            original_error=original_error,
        )


class SearchError(NotisError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED,
    ):
        details = {}
        if query:
            details["query"] = query[:100]

        super().__init__(message, code=code, details=details)
        self.query = query


class SyncError(NotisError):
    """Raised for sync engine and watcher errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_FAILED,
    ):
        details = {}
        if operation:
            details["operation"] = operation

        super().__init__(message, code=code, details=details)
        self.operation = operation


class ValidationError(NotisError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
