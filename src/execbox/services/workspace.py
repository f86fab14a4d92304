from __future__ import annotations

import io
import tarfile
import time
from pathlib import PurePosixPath
from typing import Iterable, List, Sequence

import structlog

from ..core.errors import WorkspaceWriteError
from ..core.models import CustomLibrary, ProjectFile
from ..executor.base import ContainerBackend, ContainerHandle

log = structlog.get_logger(__name__)


def build_archive(root: str, files: Iterable[ProjectFile], *, uid: int = 0, gid: int = 0) -> bytes:
    """Tar ``files`` under ``root`` (relative to ``/``), with every directory entry spelled out.

    Content goes in byte-for-byte; nothing here ever passes through a shell.
    """
    root_parts = PurePosixPath(root.strip("/")).parts
    files = list(files)
    dirs = set()
    for i in range(1, len(root_parts) + 1):
        dirs.add(PurePosixPath(*root_parts[:i]))
    for f in files:
        parents = PurePosixPath(*root_parts, f.path).parents
        for p in parents:
            if str(p) != ".":
                dirs.add(p)

    now = time.time()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for d in sorted(dirs, key=lambda p: (len(p.parts), str(p))):
            info = tarfile.TarInfo(str(d))
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            info.uid, info.gid = uid, gid
            info.mtime = now
            tar.addfile(info)
        for f in files:
            info = tarfile.TarInfo(str(PurePosixPath(*root_parts, f.path)))
            info.size = len(f.content)
            info.mode = 0o755 if f.content.startswith(b"#!") else 0o644
            info.uid, info.gid = uid, gid
            info.mtime = now
            tar.addfile(info, io.BytesIO(f.content))
    return buf.getvalue()


class WorkspaceBuilder:
    def __init__(self, backend: ContainerBackend, *, workspace_root: str, staging_root: str,
                 uid: int = 0, gid: int = 0):
        self.backend = backend
        self.workspace_root = workspace_root.rstrip("/")
        self.staging_root = staging_root.rstrip("/")
        self.uid = uid
        self.gid = gid

    def base_dir(self, session_id: str) -> str:
        return f"{self.workspace_root}/{session_id}"

    def staging_dir(self, session_id: str) -> str:
        return f"{self.staging_root}/{session_id}"

    async def write(self, handle: ContainerHandle, root: str, files: Sequence[ProjectFile]) -> None:
        try:
            data = build_archive(root, files, uid=self.uid, gid=self.gid)
        except (tarfile.TarError, ValueError) as e:
            raise WorkspaceWriteError(f"could not pack files for {root}: {e}") from e
        await self.backend.put_archive(handle, "/", data)

    async def materialize(self, handle: ContainerHandle, files: Sequence[ProjectFile]) -> str:
        base = self.base_dir(handle.session_id)
        await self.write(handle, base, files)
        log.info("workspace_materialized", session_id=handle.session_id, files=len(files),
                 bytes=sum(len(f.content) for f in files))
        return base

    async def stage_libraries(self, handle: ContainerHandle, libraries: Sequence[CustomLibrary]) -> str:
        staging = self.staging_dir(handle.session_id)
        if not libraries:
            return staging
        files: List[ProjectFile] = [ProjectFile(lib.file_name, lib.content) for lib in libraries]
        await self.write(handle, staging, files)
        log.info("libraries_staged", session_id=handle.session_id, count=len(files))
        return staging
