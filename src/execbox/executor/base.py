from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from ..core.models import ExecResult


@dataclass(frozen=True)
class ContainerHandle:
    id: str
    name: str
    language: str
    session_id: str
    image: str
    network: bool = False
    labels: Dict[str, str] = field(default_factory=dict)


class ExecStream:
    """Hijacked exec connection: multiplexed stdout/stderr in, raw stdin out."""

    async def read(self, size: int = 65536) -> bytes: ...
    async def write(self, data: bytes) -> None: ...
    async def close(self) -> None: ...
    async def exit_code(self) -> Optional[int]: ...


class ContainerBackend:
    """Container engine seam. ``executor.docker.DockerBackend`` is the production one."""

    async def provision(self, language: str, session_id: str, needs_network: bool) -> ContainerHandle: ...
    async def teardown(self, handle: ContainerHandle) -> None: ...
    async def put_archive(self, handle: ContainerHandle, path: str, data: bytes) -> None: ...

    async def exec(
        self,
        handle: ContainerHandle,
        command: str,
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
    ) -> ExecResult: ...

    async def open_stream(
        self,
        handle: ContainerHandle,
        command: str,
        *,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecStream: ...

    async def ping(self) -> bool: ...

    async def sweep(self) -> int:
        return 0
