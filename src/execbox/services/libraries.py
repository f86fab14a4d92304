"""Placement of caller-supplied binary libraries inside a session workspace.

Blobs are staged untouched under the staging area first. After the dependency
install has run (so ``npm install`` cannot wipe them) they are merged into the
workspace according to the language:

* javascript: ``.tgz`` packages land in ``node_modules/<package name>``
* java: ``.jar`` files land in ``lib/``
* cpp: shared/static objects land in ``lib/``, headers in ``include/``;
  ``.tar.gz``/``.zip`` bundles are unpacked the same way
* python: wheels and sdists are installed from the staging area with pip
"""
from __future__ import annotations

import io
import json
import re
import shlex
import tarfile
import zipfile
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..core.errors import ValidationError
from ..core.languages import get_profile
from ..core.models import CustomLibrary, LibraryTarget, ProjectFile
from ..core.utils import normalize_path

log = structlog.get_logger(__name__)

HEADER_SUFFIXES = (".h", ".hpp", ".hh", ".hxx")
LIB_SUFFIXES = (".so", ".a")
# strip a trailing npm-pack version, e.g. foo-1.2.3.tgz -> foo
_VERSION_TAIL_RE = re.compile(r"-\d+\.\d+\.\d+.*$")
# conventional fallbacks when package.json names no usable "main"
JS_ENTRY_CANDIDATES = ("index.js", "src/index.js", "lib/index.js", "dist/index.js")


def archive_stem(file_name: str) -> str:
    name = PurePosixPath(file_name).name
    for ext in (".tar.gz", ".tgz", ".zip", ".tar"):
        if name.lower().endswith(ext):
            return name[: -len(ext)]
    return PurePosixPath(name).stem


def is_archive(file_name: str) -> bool:
    return file_name.lower().endswith((".tar.gz", ".tgz", ".zip", ".tar"))


def infer_target(language: str, file_name: str) -> LibraryTarget:
    lang = get_profile(language).name
    low = file_name.lower()
    if lang == "python" and low.endswith((".whl", ".tar.gz", ".zip")):
        return LibraryTarget.PYTHON_DIST
    if lang == "javascript" and low.endswith((".tgz", ".tar.gz")):
        return LibraryTarget.NODE_PACKAGE
    if low.endswith(".jar"):
        return LibraryTarget.JAR
    if low.endswith(LIB_SUFFIXES) or ".so." in low:
        return LibraryTarget.SHARED_OBJECT
    if low.endswith(HEADER_SUFFIXES):
        return LibraryTarget.HEADER
    if is_archive(low):
        return LibraryTarget.ARCHIVE
    return LibraryTarget.UNKNOWN


def classify(language: str, libraries: Sequence[CustomLibrary]) -> List[CustomLibrary]:
    out = []
    for lib in libraries:
        target = infer_target(language, lib.file_name)
        out.append(CustomLibrary(lib.project_id, lib.file_name, lib.content, target))
    return out


# ------------ archive reading ------------

def _read_members(file_name: str, blob: bytes) -> List[Tuple[str, bytes]]:
    """Regular files of a tar/zip archive as (relative path, content); links and unsafe paths are skipped."""
    members: List[Tuple[str, bytes]] = []
    try:
        if file_name.lower().endswith(".zip"):
            with zipfile.ZipFile(io.BytesIO(blob)) as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    path = _safe(info.filename)
                    if path:
                        members.append((path, zf.read(info)))
        else:
            with tarfile.open(fileobj=io.BytesIO(blob), mode="r:*") as tf:
                for info in tf.getmembers():
                    if not info.isfile():
                        continue
                    path = _safe(info.name)
                    fh = tf.extractfile(info)
                    if path and fh is not None:
                        members.append((path, fh.read()))
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ValidationError(f"custom library '{file_name}' is not a readable archive: {e}") from e
    return members


def _safe(raw: str) -> Optional[str]:
    try:
        return normalize_path(raw)
    except ValidationError:
        return None


def _strip_single_root(members: List[Tuple[str, bytes]]) -> List[Tuple[str, bytes]]:
    # npm pack puts everything under "package/"; unwrap any lone top-level directory
    tops = {p.split("/", 1)[0] for p, _ in members}
    if len(tops) == 1 and all("/" in p for p, _ in members):
        return [(p.split("/", 1)[1], data) for p, data in members]
    return members


# ------------ per-language layouts ------------

def _node_package(lib: CustomLibrary) -> List[ProjectFile]:
    members = _strip_single_root(_read_members(lib.file_name, lib.content))
    contents: Dict[str, bytes] = dict(members)
    stem = archive_stem(lib.file_name)

    manifest: dict = {}
    if "package.json" in contents:
        try:
            manifest = json.loads(contents["package.json"].decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            log.warning("custom_library_bad_package_json", library=lib.file_name)
            manifest = {}
    pkg_name = manifest.get("name") if isinstance(manifest.get("name"), str) else None
    pkg_name = pkg_name or _VERSION_TAIL_RE.sub("", stem)

    entry = None
    main = manifest.get("main")
    if isinstance(main, str):
        main = _safe(main)
        if main and main in contents:
            entry = main
    if entry is None:
        entry = next((c for c in JS_ENTRY_CANDIDATES if c in contents), None)
    if entry and entry != "index.js" and "index.js" not in contents:
        contents["index.js"] = f"module.exports = require('./{entry}');\n".encode()

    names = [pkg_name] if pkg_name == stem else [pkg_name, stem]
    files: List[ProjectFile] = []
    for name in names:
        root = f"node_modules/{name}"
        files.extend(ProjectFile(f"{root}/{path}", data) for path, data in sorted(contents.items()))
    log.info("custom_library_placed", library=lib.file_name, package=pkg_name, entry=entry)
    return files


def _native(lib: CustomLibrary) -> List[ProjectFile]:
    low = lib.file_name.lower()
    if low.endswith(LIB_SUFFIXES) or ".so." in low:
        return [ProjectFile(f"lib/{lib.file_name}", lib.content)]
    if low.endswith(HEADER_SUFFIXES):
        return [ProjectFile(f"include/{lib.file_name}", lib.content)]
    if not is_archive(low):
        log.warning("custom_library_ignored", library=lib.file_name)
        return []

    files: List[ProjectFile] = []
    for path, data in _read_members(lib.file_name, lib.content):
        name = PurePosixPath(path).name
        parts = path.split("/")
        if name.endswith(LIB_SUFFIXES) or ".so." in name:
            files.append(ProjectFile(f"lib/{name}", data))
        elif name.endswith(HEADER_SUFFIXES):
            # keep the tree below an include/ directory so nested #include paths still resolve
            if "include" in parts[:-1]:
                rel = "/".join(parts[parts.index("include") + 1:])
            else:
                rel = name
            files.append(ProjectFile(f"include/{rel}", data))
    return files


def plan_library_layout(language: str, libraries: Sequence[CustomLibrary]) -> List[ProjectFile]:
    """Workspace-relative files produced by merging ``libraries``. Python dists are installed, not placed."""
    lang = get_profile(language).name
    files: List[ProjectFile] = []
    for lib in classify(lang, libraries):
        if lang == "javascript":
            if lib.target is LibraryTarget.NODE_PACKAGE:
                files.extend(_node_package(lib))
            elif lib.file_name.lower().endswith((".js", ".cjs", ".mjs")):
                files.append(ProjectFile(f"node_modules/{PurePosixPath(lib.file_name).stem}/index.js", lib.content))
            else:
                log.warning("custom_library_ignored", library=lib.file_name, language=lang)
        elif lang == "java":
            if lib.target is LibraryTarget.JAR:
                files.append(ProjectFile(f"lib/{lib.file_name}", lib.content))
            else:
                log.warning("custom_library_ignored", library=lib.file_name, language=lang)
        elif lang == "cpp":
            files.extend(_native(lib))
        elif lang != "python":
            log.warning("custom_library_ignored", library=lib.file_name, language=lang)
    return files


def python_dists(libraries: Sequence[CustomLibrary]) -> List[str]:
    return [lib.file_name for lib in classify("python", libraries) if lib.target is LibraryTarget.PYTHON_DIST]


def python_install_command(base_dir: str, staging_dir: str, dists: Sequence[str]) -> Optional[str]:
    if not dists:
        return None
    targets = " ".join(shlex.quote(f"{staging_dir}/{d}") for d in dists)
    return (
        f"cd {shlex.quote(base_dir)} && "
        f"PYTHONUSERBASE={shlex.quote(base_dir + '/.pyuser')} "
        f"pip install --user --no-deps --no-index --disable-pip-version-check {targets}"
    )


def link_names(files: Sequence[ProjectFile]) -> List[str]:
    """``-l`` names for every ``lib/lib<name>.so|.a`` among ``files``."""
    names: List[str] = []
    for f in files:
        p = PurePosixPath(f.path)
        if p.parent.name != "lib" or not p.name.startswith("lib"):
            continue
        base = p.name[3:]
        for ext in (".so", ".a"):
            idx = base.find(ext)
            if idx > 0 and (base.endswith(ext) or base[idx:].startswith(".so.")):
                base = base[:idx]
                break
        else:
            continue
        if base not in names:
            names.append(base)
    return names
