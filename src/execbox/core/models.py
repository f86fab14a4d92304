from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Optional


class SessionState(str, Enum):
    PROVISIONING = "provisioning"
    WORKSPACE = "workspace"
    INSTALLING = "installing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.STOPPED})

# stopped is reachable from every non-terminal state; failed likewise
TRANSITIONS: Dict[Optional[SessionState], frozenset] = {
    None: frozenset({SessionState.PROVISIONING}),
    SessionState.PROVISIONING: frozenset({SessionState.WORKSPACE}),
    SessionState.WORKSPACE: frozenset({SessionState.INSTALLING, SessionState.RUNNING}),
    SessionState.INSTALLING: frozenset({SessionState.RUNNING}),
    SessionState.RUNNING: frozenset({SessionState.COMPLETED}),
}


class FileRole(str, Enum):
    ENTRY = "entry"
    SUPPORT = "support"


@dataclass(frozen=True)
class ProjectFile:
    path: str  # normalised relative POSIX path
    content: bytes
    role: FileRole = FileRole.SUPPORT

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def suffix(self) -> str:
        return PurePosixPath(self.path).suffix.lower()

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class LibraryTarget(str, Enum):
    NODE_PACKAGE = "node_package"
    JAR = "jar"
    SHARED_OBJECT = "shared_object"
    HEADER = "header"
    PYTHON_DIST = "python_dist"
    ARCHIVE = "archive"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CustomLibrary:
    project_id: str
    file_name: str
    content: bytes
    target: LibraryTarget = LibraryTarget.UNKNOWN


class EventType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    END = "end"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (EventType.END, EventType.ERROR)


@dataclass(frozen=True)
class OutputEvent:
    type: EventType
    data: str = ""
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        out = {"type": self.type.value, "data": self.data}
        if self.exit_code is not None:
            out["exit_code"] = self.exit_code
        return out

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict())}\n\n"


@dataclass
class ExecResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class InstallOutcome:
    installed: bool
    log: str = ""
    cached: bool = False
    cache_key: Optional[str] = None
    duration_s: float = 0.0
