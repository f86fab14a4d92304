from __future__ import annotations

import asyncio
import json
import shlex
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence

import structlog

from ..core.errors import (
    DependencyInstallError,
    DependencyNetworkError,
    DependencyResolutionError,
    ExecutionTimeoutError,
)
from ..core.languages import LanguageProfile, cmake_packages, get_profile
from ..core.models import ExecResult, InstallOutcome, ProjectFile
from ..core.retry import RetryPolicy
from ..core.utils import digest, excerpt
from ..executor.base import ContainerBackend, ContainerHandle
from ..settings import Settings

log = structlog.get_logger(__name__)

CACHE_MARKER = ".cache-complete"

# find_package() names provided by the toolchain image, never fetched through conan
CONAN_SYSTEM_PACKAGES = frozenset({"Threads", "OpenMP", "CUDA", "MPI", "Boost"})
CONAN_DEFAULT_VERSIONS = {
    "fmt": "10.1.1",
    "nlohmann_json": "3.11.2",
    "spdlog": "1.12.0",
    "catch2": "3.4.0",
    "gtest": "1.14.0",
}

NETWORK_MARKERS = (
    "ENOTFOUND",
    "EAI_AGAIN",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "Temporary failure in name resolution",
    "Could not resolve host",
    "Name or service not known",
    "getaddrinfo",
    "Network is unreachable",
)
RESOLUTION_MARKERS = (
    "Could not find a version",
    "No matching distribution",
    "ETARGET",
    "E404",
    "Could not resolve dependencies",
    "Unable to find",
    "unknown revision",
)


# ------------ manifests ------------

def _names(files: Sequence[ProjectFile]) -> Dict[str, ProjectFile]:
    # manifests only count at the workspace root
    return {f.path: f for f in files}


def has_manifest(language: str, files: Sequence[ProjectFile]) -> bool:
    profile = get_profile(language)
    by_path = _names(files)
    return any(m in by_path for m in profile.manifests)


def _cmake_requirements(files: Sequence[ProjectFile]) -> List[str]:
    cmake = _names(files).get("CMakeLists.txt")
    if cmake is None:
        return []
    return [p for p in cmake_packages(cmake.text()) if p not in CONAN_SYSTEM_PACKAGES]


def needs_network(language: str, dependencies: Optional[Mapping[str, str]], files: Sequence[ProjectFile]) -> bool:
    if dependencies:
        return True
    if has_manifest(language, files):
        return True
    return get_profile(language).name == "cpp" and bool(_cmake_requirements(files))


def package_json(dependencies: Mapping[str, str]) -> bytes:
    doc = {
        "name": "execbox-session",
        "version": "1.0.0",
        "private": True,
        "dependencies": {k: (v or "*") for k, v in sorted(dependencies.items())},
    }
    return (json.dumps(doc, indent=2) + "\n").encode()


def requirements_txt(dependencies: Mapping[str, str]) -> bytes:
    lines = []
    for name, version in sorted(dependencies.items()):
        version = (version or "").strip()
        if not version or version in ("*", "latest"):
            lines.append(name)
        elif version[0] in "<>=!~":
            lines.append(f"{name}{version}")
        else:
            lines.append(f"{name}=={version}")
    return ("\n".join(lines) + "\n").encode()


def conanfile_txt(packages: Sequence[str], dependencies: Mapping[str, str]) -> bytes:
    requires = []
    for pkg in packages:
        requires.append(f"{pkg}/{CONAN_DEFAULT_VERSIONS.get(pkg.lower(), 'latest')}")
    for pkg, version in dependencies.items():
        if pkg not in packages:
            requires.append(f"{pkg}/{version or 'latest'}")
    body = "[requires]\n" + "".join(f"{r}\n" for r in requires)
    body += "\n[generators]\nCMakeDeps\nCMakeToolchain\n"
    return body.encode()


def derived_manifests(
    language: str,
    files: Sequence[ProjectFile],
    dependencies: Optional[Mapping[str, str]],
) -> List[ProjectFile]:
    """Manifest files to add to the workspace when the submission carries none of its own."""
    profile = get_profile(language)
    if has_manifest(profile.name, files):
        return []
    deps = dict(dependencies or {})
    if profile.name == "javascript" and deps:
        return [ProjectFile("package.json", package_json(deps))]
    if profile.name == "python" and deps:
        return [ProjectFile("requirements.txt", requirements_txt(deps))]
    if profile.name == "cpp":
        packages = _cmake_requirements(files)
        if packages or deps:
            return [ProjectFile("conanfile.txt", conanfile_txt(packages, deps))]
    if deps:
        log.warning("dependencies_ignored", language=profile.name,
                    reason="no manifest can be derived", count=len(deps))
    return []


def cache_key(language: str, files: Sequence[ProjectFile], dependencies: Optional[Mapping[str, str]]) -> str:
    profile = get_profile(language)
    by_path = _names(files)
    manifests = {m: by_path[m].text() for m in profile.manifests if m in by_path}
    return digest({"language": profile.name, "manifests": manifests, "dependencies": dict(dependencies or {})})


def classify_failure(message: str, log_text: str, exit_code: Optional[int]) -> DependencyInstallError:
    bounded = excerpt(log_text)
    if any(m in log_text for m in NETWORK_MARKERS):
        return DependencyNetworkError(f"{message}: network unavailable", log=bounded, exit_code=exit_code)
    if any(m in log_text for m in RESOLUTION_MARKERS):
        return DependencyResolutionError(f"{message}: unknown package or version", log=bounded, exit_code=exit_code)
    return DependencyInstallError(message, log=bounded, exit_code=exit_code)


# ------------ commands ------------

def install_command(profile: LanguageProfile, base_dir: str) -> str:
    base = shlex.quote(base_dir)
    if profile.name == "javascript":
        return f"cd {base} && npm install --legacy-peer-deps --no-audit --no-fund 2>&1"
    if profile.name == "python":
        userbase = shlex.quote(f"{base_dir}/.pyuser")
        return (f"cd {base} && PYTHONUSERBASE={userbase} pip install --user --no-cache-dir "
                f"--disable-pip-version-check -r requirements.txt 2>&1")
    if profile.name == "java":
        repo = shlex.quote(f"-Dmaven.repo.local={base_dir}/.m2")
        return f"cd {base} && mvn -B {repo} dependency:copy-dependencies -DoutputDirectory=lib 2>&1"
    if profile.name == "cpp":
        conan_home = shlex.quote(f"{base_dir}/.conan2")
        return (f"cd {base} && export CONAN_HOME={conan_home} && conan profile detect --force 2>&1 && "
                f"conan install . --output-folder=build --build=missing 2>&1")
    if profile.name == "go":
        modcache = shlex.quote(f"{base_dir}/.gomod")
        return f"cd {base} && GOMODCACHE={modcache} GOFLAGS=-modcacherw GOCACHE=/tmp/go-build go mod download 2>&1"
    raise DependencyInstallError(f"no installer for {profile.name}")


def _left(deadline: float) -> float:
    return max(deadline - time.monotonic(), 0.001)


class DependencyInstaller:
    """Runs the language's package manager inside the session container, backed by a shared cache.

    Cache entries live at ``<cache_root>/<language>-<key>/<artifact dir>`` on the
    per-language volume. An entry only counts once its ``.cache-complete`` marker
    exists; entries are assembled in a temporary directory and renamed into place.

    The install timeout is one deadline per call. Waiting for another session
    installing the same key, restoring from the cache and every install attempt
    all count against it.
    """

    def __init__(self, backend: ContainerBackend, settings: Settings, retry: Optional[RetryPolicy] = None):
        self.backend = backend
        self.s = settings
        self.retry = retry or RetryPolicy(
            attempts=1 + settings.install_retries,
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, key: str, profile: LanguageProfile, deadline: float) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), _left(deadline))
            except asyncio.TimeoutError as e:
                raise self._timeout(profile) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            # drop the lock once nobody holds or waits on it
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def cache_dir(self, profile: LanguageProfile, key: str) -> str:
        return f"{self.s.cache_root.rstrip('/')}/{profile.name}-{key}"

    def timeout_for(self, profile: LanguageProfile) -> float:
        return self.s.install_timeout_for(profile.name, profile.install_timeout_s)

    def _timeout(self, profile: LanguageProfile) -> ExecutionTimeoutError:
        return ExecutionTimeoutError(f"{profile.name} dependency install", self.timeout_for(profile))

    async def install(
        self,
        handle: ContainerHandle,
        language: str,
        base_dir: str,
        files: Sequence[ProjectFile],
        dependencies: Optional[Mapping[str, str]] = None,
    ) -> InstallOutcome:
        profile = get_profile(language)
        if not has_manifest(profile.name, files):
            return InstallOutcome(installed=False)

        key = cache_key(profile.name, files, dependencies)
        started = time.monotonic()
        deadline = started + self.timeout_for(profile)
        async with self._lock(key, profile, deadline):
            if await self._restore(handle, profile, key, base_dir, deadline):
                log.info("dependency_cache_hit", session_id=handle.session_id, language=profile.name, key=key[:12])
                return InstallOutcome(installed=True, cached=True, cache_key=key,
                                      duration_s=time.monotonic() - started)

            log.info("dependency_install_started", session_id=handle.session_id, language=profile.name, key=key[:12])
            output = await self.retry.run(
                lambda: self._run_install(handle, profile, base_dir, deadline),
                lambda exc: isinstance(exc, DependencyNetworkError),
                step="install",
            )
            await self._publish(handle, profile, key, base_dir)

        elapsed = time.monotonic() - started
        log.info("dependency_install_finished", session_id=handle.session_id, language=profile.name,
                 duration_s=round(elapsed, 2))
        return InstallOutcome(installed=True, log=excerpt(output), cache_key=key, duration_s=elapsed)

    async def _exec_until(self, handle: ContainerHandle, profile: LanguageProfile, command: str,
                          deadline: float, *, cap: Optional[float] = None, user: Optional[str] = None) -> ExecResult:
        left = deadline - time.monotonic()
        if left <= 0:
            raise self._timeout(profile)
        try:
            return await self.backend.exec(handle, command, timeout=min(left, cap) if cap else left, user=user)
        except ExecutionTimeoutError as e:
            raise self._timeout(profile) from e

    async def _run_install(self, handle: ContainerHandle, profile: LanguageProfile, base_dir: str,
                           deadline: float) -> str:
        res = await self._exec_until(handle, profile, install_command(profile, base_dir), deadline)
        log.debug("dependency_install_output", session_id=handle.session_id, output=excerpt(res.output))
        if not res.ok:
            raise classify_failure(f"{profile.name} dependency install failed (exit {res.exit_code})",
                                   res.output, res.exit_code)
        return res.output

    async def _restore(self, handle: ContainerHandle, profile: LanguageProfile, key: str, base_dir: str,
                       deadline: float) -> bool:
        entry = self.cache_dir(profile, key)
        marker = await self._exec_until(handle, profile, f"test -f {shlex.quote(entry + '/' + CACHE_MARKER)}",
                                        deadline, cap=30, user="root")
        if not marker.ok:
            return False
        src = shlex.quote(f"{entry}/{profile.artifact_dir}")
        dst = shlex.quote(f"{base_dir}/{profile.artifact_dir}")
        owner = f"{self.s.sandbox_uid}:{self.s.sandbox_gid}"
        res = await self._exec_until(
            handle,
            profile,
            f"rm -rf {dst} && cp -a {src} {dst} && chown -R {owner} {dst}",
            deadline,
            user="root",
        )
        if not res.ok:
            # a broken entry is treated as a miss; the fresh install republishes it
            log.warning("dependency_cache_restore_failed", session_id=handle.session_id, key=key[:12],
                        output=excerpt(res.output, 500))
            return False
        return True

    async def _publish(self, handle: ContainerHandle, profile: LanguageProfile, key: str, base_dir: str) -> None:
        entry = shlex.quote(self.cache_dir(profile, key))
        root = shlex.quote(self.s.cache_root.rstrip("/"))
        src = shlex.quote(f"{base_dir}/{profile.artifact_dir}")
        script = (
            f"[ -d {src} ] || exit 0; "
            f"[ -e {entry} ] && exit 0; "
            f"mkdir -p {root} && tmp=$(mktemp -d {root}/.tmp-XXXXXX) && "
            f"cp -a {src} \"$tmp\"/ && touch \"$tmp\"/{CACHE_MARKER} && "
            f"{{ [ -e {entry} ] && rm -rf \"$tmp\" || mv \"$tmp\" {entry}; }}"
        )
        try:
            res = await self.backend.exec(handle, script, timeout=self.timeout_for(profile), user="root")
        except ExecutionTimeoutError:
            log.warning("dependency_cache_publish_timeout", session_id=handle.session_id, key=key[:12])
            return
        if not res.ok:
            log.warning("dependency_cache_publish_failed", session_id=handle.session_id, key=key[:12],
                        output=excerpt(res.output, 500))
            return
        log.info("dependency_cache_published", session_id=handle.session_id, language=profile.name, key=key[:12])
