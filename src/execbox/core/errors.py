from __future__ import annotations

from typing import Optional


class ExecboxError(Exception):
    """Base class for engine errors. ``code`` is the stable wire identifier."""

    code = "internal_error"

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(ExecboxError):
    code = "validation_error"


class UnsupportedLanguageError(ExecboxError):
    code = "unsupported_language"

    def __init__(self, language: str):
        super().__init__(f"language '{language}' is not supported")
        self.language = language


class ProvisionError(ExecboxError):
    code = "provision_error"

    def __init__(self, message: str, *, transient: bool = False, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.transient = transient


class WorkspaceWriteError(ExecboxError):
    code = "workspace_error"


class DependencyInstallError(ExecboxError):
    code = "dependency_install_failed"
    kind = "generic"

    def __init__(self, message: str, *, log: str = "", exit_code: Optional[int] = None):
        super().__init__(message, detail=log)
        self.log = log
        self.exit_code = exit_code


class DependencyNetworkError(DependencyInstallError):
    kind = "network"


class DependencyResolutionError(DependencyInstallError):
    kind = "resolution"


class ExecutionTimeoutError(ExecboxError):
    code = "timeout"

    def __init__(self, step: str, seconds: float):
        super().__init__(f"{step} exceeded {seconds:g}s")
        self.step = step
        self.seconds = seconds


class StreamError(ExecboxError):
    code = "stream_error"


class SessionNotFoundError(ExecboxError):
    code = "not_found"

    def __init__(self, session_id: str):
        super().__init__(f"session '{session_id}' not found")
        self.session_id = session_id


class CleanupError(ExecboxError):
    code = "cleanup_error"


class InvalidTransition(ExecboxError):
    pass
