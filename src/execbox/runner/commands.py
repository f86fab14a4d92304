from __future__ import annotations

import shlex
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence

from ..core.errors import ValidationError
from ..core.languages import get_profile, java_entry_class
from ..core.models import ProjectFile
from ..services.libraries import link_names


def _q(s: str) -> str:
    return shlex.quote(s)


def _sources(files: Sequence[ProjectFile], extensions: Sequence[str]) -> List[str]:
    return sorted(f.path for f in files if f.path.lower().endswith(tuple(extensions)))


class Runner:
    """Turns a workspace into the single shell command that compiles (if needed) and runs it."""

    language: str = ""

    def command(self, files: Sequence[ProjectFile], entry: str, *, base_dir: str,
                main_class: Optional[str] = None, libraries: Sequence[ProjectFile] = ()) -> str:
        raise NotImplementedError


class PythonRunner(Runner):
    language = "python"

    def command(self, files, entry, *, base_dir, main_class=None, libraries=()):
        return (f"cd {_q(base_dir)} && PYTHONPATH={_q(base_dir)} "
                f"PYTHONUSERBASE={_q(base_dir + '/.pyuser')} python3 -u {_q(entry)}")


class NodeRunner(Runner):
    language = "javascript"

    def command(self, files, entry, *, base_dir, main_class=None, libraries=()):
        return f"cd {_q(base_dir)} && NODE_PATH={_q(base_dir + '/node_modules')} node {_q(entry)}"


class JavaRunner(Runner):
    language = "java"

    def command(self, files, entry, *, base_dir, main_class=None, libraries=()):
        sources = _sources(files, (".java",))
        if not sources:
            raise ValidationError("no .java sources to compile")
        entry_source = next((f.text() for f in files if f.path == entry), "")
        cls = java_entry_class(entry_source, main_class)
        cp = _q(".:lib/*")
        return (f"cd {_q(base_dir)} && javac -cp {cp} -d . {' '.join(_q(s) for s in sources)} && "
                f"java -cp {cp} {_q(cls)}")


class CppRunner(Runner):
    language = "cpp"

    def command(self, files, entry, *, base_dir, main_class=None, libraries=()):
        sources = _sources(files, get_profile("cpp").extensions)
        if not sources:
            raise ValidationError("no C++ sources to compile")
        # conan-generated headers land under build/ when an install ran
        includes = "-I. -Iinclude"
        if any(f.path in ("conanfile.txt", "conanfile.py") for f in files):
            includes += " -Ibuild"
        links = "".join(f" -l{_q(n)}" for n in link_names(libraries))
        return (f"cd {_q(base_dir)} && g++ -std=c++20 {includes} -Llib "
                f"{' '.join(_q(s) for s in sources)}{links} -o a.out && LD_LIBRARY_PATH=./lib ./a.out")


class GoRunner(Runner):
    language = "go"

    def command(self, files, entry, *, base_dir, main_class=None, libraries=()):
        env = f"GOMODCACHE={_q(base_dir + '/.gomod')} GOCACHE=/tmp/go-build GOFLAGS=-modcacherw"
        if any(f.path == "go.mod" for f in files):
            target = "."
        else:
            # without a module, only the entry's package directory builds together
            pkg_dir = str(PurePosixPath(entry).parent)
            srcs = [s for s in _sources(files, (".go",))
                    if str(PurePosixPath(s).parent) == pkg_dir and not s.endswith("_test.go")]
            target = " ".join(_q(s) for s in srcs) or _q(entry)
            env += " GO111MODULE=off"
        return f"cd {_q(base_dir)} && {env} go build -o app {target} && ./app"


RUNNERS: Dict[str, Runner] = {r.language: r for r in (PythonRunner(), NodeRunner(), JavaRunner(), CppRunner(), GoRunner())}


def build_command(
    language: str,
    files: Sequence[ProjectFile],
    entry_file: str,
    *,
    base_dir: str,
    main_class: Optional[str] = None,
    libraries: Sequence[ProjectFile] = (),
) -> str:
    """Shell command for ``sh -c`` that builds and runs the submission from ``base_dir``.

    Pure: raises ``UnsupportedLanguageError`` for unknown languages and
    ``ValidationError`` when a compiled language has nothing to compile.
    ``files`` are the submitted files, and every source among them is compiled
    wherever it sits. ``libraries`` are the files merged from custom libraries;
    they are never compiled, and their ``lib/`` entries become ``-l`` flags for C++.
    """
    profile = get_profile(language)
    return RUNNERS[profile.name].command(files, entry_file, base_dir=base_dir,
                                         main_class=main_class, libraries=libraries)
