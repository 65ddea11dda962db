"""Custom exceptions for gitnotes.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Resolution errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_AMBIGUOUS = 1002
    REVISION_NOT_FOUND = 1003
    CONTENT_NOT_FOUND = 1004

    # Conflict errors (2xxx)
    PATH_CONFLICT = 2001
    TRANSACTION_ALREADY_OPEN = 2002
    TRANSACTION_NOT_OPEN = 2003
    STALE_CATALOG = 2004

    # Validation errors (3xxx)
    VALIDATION_FAILED = 3001
    INVALID_PATH = 3002
    INVALID_TAG = 3003
    INVALID_DATE = 3004
    INVALID_PATTERN = 3005
    PATH_TRAVERSAL_DETECTED = 3006

    # Storage errors (4xxx)
    STORAGE_INIT_FAILED = 4001
    STORAGE_READ_FAILED = 4002
    STORAGE_WRITE_FAILED = 4003
    STORAGE_COMMIT_FAILED = 4004
    STORAGE_REMOTE_FAILED = 4005
    CATALOG_REBUILD_FAILED = 4006
    CACHE_CORRUPTED = 4007

    # External process errors (5xxx)
    EXTERNAL_PROCESS_FAILED = 5001
    EXTERNAL_PROCESS_MISSING = 5002


class GitNotesError(Exception):
    """Base exception for all gitnotes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
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
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(GitNotesError):
    """Raised when a path, id or revision cannot be resolved."""

    def __init__(
        self,
        reference: str,
        message: Optional[str] = None,
        revision: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOTE_NOT_FOUND
    ):
        details: Dict[str, Any] = {"reference": reference}
        if revision:
            details["revision"] = revision
        super().__init__(
            message or f"Note '{reference}' not found",
            code=code,
            details=details
        )
        self.reference = reference
        self.revision = revision


class AmbiguousError(GitNotesError):
    """Raised when a path pattern resolves to more than one note."""

    def __init__(self, pattern: str, candidates: List[str]):
        super().__init__(
            f"'{pattern}' matches {len(candidates)} notes",
            code=ErrorCode.NOTE_AMBIGUOUS,
            details={"pattern": pattern, "candidates": candidates[:10]}
        )
        self.pattern = pattern
        self.candidates = list(candidates)


class ConflictError(GitNotesError):
    """Raised for uniqueness violations, stale catalogs and concurrent transactions."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        note_id: Optional[int] = None,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.PATH_CONFLICT
    ):
        details: Dict[str, Any] = {}
        if path:
            details["path"] = path
        if note_id is not None:
            details["note_id"] = note_id
        if operation:
            details["operation"] = operation

        super().__init__(message, code=code, details=details)
        self.path = path
        self.note_id = note_id
        self.operation = operation


class TransactionStateError(ConflictError):
    """Raised on an illegal transaction state transition (e.g. commit while closed)."""

    def __init__(self, operation: str, state: str):
        code = (
            ErrorCode.TRANSACTION_ALREADY_OPEN
            if operation == "begin"
            else ErrorCode.TRANSACTION_NOT_OPEN
        )
        super().__init__(
            f"Cannot {operation} a transaction in state {state}",
            operation=operation,
            code=code,
        )
        self.state = state


class ValidationError(GitNotesError):
    """Raised for malformed tag, path, date or pattern input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class StorageError(GitNotesError):
    """Raised for failures of the underlying git repository (I/O, corruption, remote)."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if path:
            details["path"] = path
        if returncode is not None:
            details["returncode"] = returncode
        if stderr:
            details["stderr"] = stderr[:200]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.original_error = original_error


class CatalogRebuildError(StorageError):
    """Raised when the catalog cannot be rebuilt from history.

    The catalog cannot be trusted after this error; callers must surface it.
    """

    def __init__(
        self,
        message: str,
        revision: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="rebuild",
            code=ErrorCode.CATALOG_REBUILD_FAILED,
            original_error=original_error
        )
        self.revision = revision
        if revision:
            self.details["revision"] = revision


class ExternalProcessError(GitNotesError):
    """Raised when a collaborator process (snippet runner, converter) fails or is missing."""

    def __init__(
        self,
        message: str,
        program: Optional[str] = None,
        returncode: Optional[int] = None,
        output: Optional[str] = None,
        code: ErrorCode = ErrorCode.EXTERNAL_PROCESS_FAILED
    ):
        details: Dict[str, Any] = {}
        if program:
            details["program"] = program
        if returncode is not None:
            details["returncode"] = returncode
        if output:
            details["output"] = output[:200]

        super().__init__(message, code=code, details=details)
        self.program = program
        self.returncode = returncode
        self.output = output

