"""Unified error taxonomy for the code agent."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error categories shared by every component."""

    # File operation errors
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    SYMLINK_ESCAPE = "SYMLINK_ESCAPE"
    NOT_A_DIRECTORY = "NOT_A_DIRECTORY"

    # Execution errors
    EXECUTION_FAILED = "EXECUTION_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    # Input errors
    INVALID_INPUT = "INVALID_INPUT"

    # Model / provider errors
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"

    # Patch errors
    PATCH_FAILED = "PATCH_FAILED"

    # General errors
    INTERNAL = "INTERNAL"
    NOT_SUPPORTED = "NOT_SUPPORTED"


class AgentError(Exception):
    """
    Standard error type for the code agent.

    Carries a machine-checkable code, a human message, an optional wrapped
    cause, free-form diagnostic context and an optional remediation hint.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, str]] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.cause = cause
        self.context: Dict[str, str] = dict(context or {})
        self.suggestion = suggestion
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.code.value}] {self.message}: {self.cause}"
        return f"[{self.code.value}] {self.message}"

    def __repr__(self) -> str:
        return f"AgentError(code={self.code.value!r}, message={self.message!r})"

    def with_context(self, key: str, value: Any) -> "AgentError":
        """Attach a diagnostic key/value pair and return the same error."""
        self.context[key] = str(value)
        return self

    def with_suggestion(self, text: str) -> "AgentError":
        """Attach a user-facing remediation hint and return the same error."""
        self.suggestion = text
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Portable representation used inside tool-result events."""
        data: Dict[str, Any] = {"code": self.code.value, "message": str(self)}
        if self.context:
            data["context"] = dict(self.context)
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


def new(code: ErrorCode, message: str) -> AgentError:
    """Create a fresh AgentError."""
    return AgentError(code, message)


def wrap(code: ErrorCode, message: str, cause: BaseException) -> AgentError:
    """Create an AgentError that preserves ``cause`` for inspection."""
    return AgentError(code, message, cause=cause)


def is_code(err: Optional[BaseException], code: ErrorCode) -> bool:
    """Check whether ``err`` or anything it wraps carries ``code``."""
    seen = set()
    current = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, AgentError) and current.code == code:
            return True
        if isinstance(current, AgentError) and current.cause is not None:
            current = current.cause
        else:
            current = current.__cause__
    return False


# Helper constructors for common error patterns

def file_not_found(path: str) -> AgentError:
    return new(ErrorCode.FILE_NOT_FOUND, f"file not found: {path}").with_context("path", path)


def permission_denied(path: str) -> AgentError:
    return new(ErrorCode.PERMISSION_DENIED, f"permission denied: {path}").with_context("path", path)


def not_a_directory(path: str) -> AgentError:
    return new(ErrorCode.NOT_A_DIRECTORY, f"not a directory: {path}").with_context("path", path)


def path_traversal(path: str, base_path: str) -> AgentError:
    return (
        new(ErrorCode.PATH_TRAVERSAL, f"path traversal detected: {path} is outside {base_path}")
        .with_context("path", path)
        .with_context("base_path", base_path)
    )


def symlink_escape(path: str, real_path: str, base_path: str) -> AgentError:
    return (
        new(
            ErrorCode.SYMLINK_ESCAPE,
            f"symlink points outside base directory: {path} -> {real_path} (base: {base_path})",
        )
        .with_context("path", path)
        .with_context("real_path", real_path)
        .with_context("base_path", base_path)
    )


def invalid_input(message: str) -> AgentError:
    return new(ErrorCode.INVALID_INPUT, f"invalid input: {message}")


def execution_failed(command: str, cause: Optional[BaseException] = None) -> AgentError:
    return AgentError(
        ErrorCode.EXECUTION_FAILED, f"execution failed: {command}", cause=cause
    ).with_context("command", command)


def timeout(operation: str) -> AgentError:
    return new(ErrorCode.TIMEOUT, f"operation timed out: {operation}").with_context("operation", operation)


def cancelled(operation: str) -> AgentError:
    return new(ErrorCode.CANCELLED, f"operation cancelled: {operation}").with_context("operation", operation)


def missing_credential(provider: str, env_var: str) -> AgentError:
    return (
        new(ErrorCode.MISSING_CREDENTIAL, f"{provider} API key not configured")
        .with_context("provider", provider)
        .with_suggestion(f"set the {env_var} environment variable")
    )


def model_not_found(model_id: str) -> AgentError:
    return new(ErrorCode.MODEL_NOT_FOUND, f"model not found: {model_id}").with_context("model_id", model_id)


def provider_error(provider: str, cause: BaseException) -> AgentError:
    return wrap(ErrorCode.PROVIDER_ERROR, f"{provider} provider error", cause).with_context("provider", provider)


def patch_failed(reason: str) -> AgentError:
    return new(ErrorCode.PATCH_FAILED, f"patch failed: {reason}")


def internal(message: str, cause: Optional[BaseException] = None) -> AgentError:
    return AgentError(ErrorCode.INTERNAL, f"internal error: {message}", cause=cause)


def not_supported(feature: str) -> AgentError:
    return new(ErrorCode.NOT_SUPPORTED, f"not supported: {feature}").with_context("feature", feature)
