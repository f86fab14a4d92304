from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from ..core.errors import ValidationError
from ..core.models import CustomLibrary
from ..core.utils import normalize_path

log = structlog.get_logger(__name__)


class LibraryStore:
    """Opaque blob lookup for uploaded custom libraries, keyed by project id."""

    def get(self, project_id: str, file_name: str) -> Optional[bytes]:
        raise NotImplementedError

    def list(self, project_id: str) -> List[str]:
        raise NotImplementedError


class LocalFSLibraryStore(LibraryStore):
    """
    Library blobs on the local filesystem:
      <libraries_dir>/<project_id>/
        ├─ mylib-1.0.0.tgz
        └─ helpers.jar
    """

    def __init__(self, libraries_dir: Path):
        self.libraries_dir = libraries_dir if libraries_dir.is_absolute() else libraries_dir.resolve()

    def _project_dir(self, project_id: str) -> Path:
        pid = normalize_path(project_id)
        if "/" in pid:
            raise ValidationError(f"invalid project id: {project_id!r}")
        return self.libraries_dir / pid

    def get(self, project_id: str, file_name: str) -> Optional[bytes]:
        name = normalize_path(file_name)
        root = self._project_dir(project_id)
        # uploads are sometimes stored with the archive suffix appended
        for candidate in (name, f"{name}.gz", f"{name}.tar.gz"):
            p = root / candidate
            if p.is_file():
                return p.read_bytes()
        return None

    def list(self, project_id: str) -> List[str]:
        root = self._project_dir(project_id)
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_file())


def resolve_libraries(
    store: LibraryStore,
    project_id: Optional[str],
    refs: Sequence[str],
) -> List[CustomLibrary]:
    """Load the referenced blobs; with no refs, every library uploaded for the project is used."""
    if not project_id:
        if refs:
            raise ValidationError("custom libraries require a project id")
        return []

    names = list(refs) or store.list(project_id)
    if not refs and names:
        log.info("auto_including_project_libraries", project_id=project_id, count=len(names))

    out: List[CustomLibrary] = []
    for name in names:
        blob = store.get(project_id, name)
        if blob is None:
            raise ValidationError(f"custom library '{name}' not found for project {project_id}")
        if not blob:
            raise ValidationError(f"custom library '{name}' is empty")
        out.append(CustomLibrary(project_id=project_id, file_name=normalize_path(name).split("/")[-1], content=blob))
    return out
