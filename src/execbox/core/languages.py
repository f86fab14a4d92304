"""Static language profile table.

Everything that differs between languages (image, entry-file convention,
source extensions, dependency manifests, install timeout) lives here so the
rest of the engine dispatches on data instead of branching per language.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import UnsupportedLanguageError

PUBLIC_CLASS_RE = re.compile(r"public\s+(?:final\s+|abstract\s+)*class\s+(\w+)")
JAVA_PACKAGE_RE = re.compile(r"^\s*package\s+([\w.]+)\s*;", re.MULTILINE)
FIND_PACKAGE_RE = re.compile(r"find_package\s*\(\s*(\w+)(?:\s+[^)]*)?\)", re.IGNORECASE)


@dataclass(frozen=True)
class LanguageProfile:
    name: str
    image: str
    default_entry: str
    extensions: Tuple[str, ...]
    manifests: Tuple[str, ...]
    install_timeout_s: float
    artifact_dir: str
    aliases: Tuple[str, ...] = ()
    compiled: bool = False

    def is_source(self, path: str) -> bool:
        return path.lower().endswith(self.extensions)


PROFILES: Dict[str, LanguageProfile] = {
    p.name: p
    for p in (
        LanguageProfile(
            name="python",
            image="python",
            default_entry="main.py",
            extensions=(".py",),
            manifests=("requirements.txt",),
            install_timeout_s=120.0,
            artifact_dir=".pyuser",
            aliases=("py", "python3"),
        ),
        LanguageProfile(
            name="javascript",
            image="javascript",
            default_entry="main.js",
            extensions=(".js", ".mjs", ".cjs"),
            manifests=("package.json",),
            install_timeout_s=120.0,
            artifact_dir="node_modules",
            aliases=("js", "node", "nodejs"),
        ),
        LanguageProfile(
            name="java",
            image="java",
            default_entry="Main.java",
            extensions=(".java",),
            manifests=("pom.xml",),
            install_timeout_s=180.0,
            artifact_dir="lib",
            compiled=True,
        ),
        LanguageProfile(
            name="cpp",
            image="cpp",
            default_entry="main.cpp",
            extensions=(".cpp", ".cc", ".cxx"),
            manifests=("conanfile.txt", "conanfile.py"),
            install_timeout_s=300.0,
            artifact_dir="build",
            aliases=("c++",),
            compiled=True,
        ),
        LanguageProfile(
            name="go",
            image="go",
            default_entry="main.go",
            extensions=(".go",),
            manifests=("go.mod",),
            install_timeout_s=120.0,
            artifact_dir=".gomod",
            aliases=("golang",),
            compiled=True,
        ),
    )
}

_ALIASES: Dict[str, str] = {}
for _p in PROFILES.values():
    _ALIASES[_p.name] = _p.name
    for _a in _p.aliases:
        _ALIASES[_a] = _p.name


def get_profile(language: str) -> LanguageProfile:
    name = _ALIASES.get((language or "").strip().lower())
    if name is None:
        raise UnsupportedLanguageError(language)
    return PROFILES[name]


def supported_languages() -> Tuple[str, ...]:
    return tuple(PROFILES)


def java_entry_class(source: str, explicit: Optional[str] = None) -> str:
    """Class to hand to ``java``: explicit name, else first public class (package-qualified), else Main."""
    if explicit:
        return explicit
    m = PUBLIC_CLASS_RE.search(source or "")
    name = m.group(1) if m else "Main"
    pkg = JAVA_PACKAGE_RE.search(source or "")
    return f"{pkg.group(1)}.{name}" if pkg else name


def default_entry_for(language: str, code: Optional[str] = None) -> str:
    profile = get_profile(language)
    if profile.name == "java" and code:
        m = PUBLIC_CLASS_RE.search(code)
        return f"{m.group(1)}.java" if m else profile.default_entry
    return profile.default_entry


def cmake_packages(cmake_source: str) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(FIND_PACKAGE_RE.findall(cmake_source or "")))
