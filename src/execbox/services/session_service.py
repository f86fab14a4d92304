from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set

import structlog

from ..core.errors import (
    CleanupError,
    DependencyInstallError,
    ExecboxError,
    ExecutionTimeoutError,
    InvalidTransition,
    ProvisionError,
    SessionNotFoundError,
    StreamError,
    ValidationError,
)
from ..core.languages import default_entry_for, get_profile
from ..core.models import (
    TRANSITIONS,
    CustomLibrary,
    EventType,
    FileRole,
    OutputEvent,
    ProjectFile,
    SessionState,
)
from ..core.retry import RetryPolicy
from ..core.utils import check_session_id, excerpt, normalize_path
from ..executor.base import ContainerBackend, ContainerHandle, ExecStream
from ..runner.commands import build_command
from ..settings import Settings
from .demux import TextDemuxer
from .dependencies import DependencyInstaller, derived_manifests, has_manifest, needs_network
from .libraries import plan_library_layout, python_dists, python_install_command
from .session_registry import SessionRegistry
from .storage import LibraryStore, resolve_libraries
from .transport import OutputChannel
from .workspace import WorkspaceBuilder

log = structlog.get_logger(__name__)

# after stream EOF the engine may not have recorded the exit status yet
EXIT_CODE_POLLS = 20
EXIT_CODE_POLL_S = 0.05


@dataclass
class StartSpec:
    session_id: str
    language: str
    files: List[ProjectFile]
    main_class: Optional[str] = None
    dependencies: Dict[str, str] = field(default_factory=dict)
    libraries: List[CustomLibrary] = field(default_factory=list)

    @property
    def entry_file(self) -> str:
        return next(f.path for f in self.files if f.role is FileRole.ENTRY)


@dataclass
class SessionPlan:
    """Everything computed before a container exists; building it is where validation fails."""

    files: List[ProjectFile]
    library_files: List[ProjectFile]
    python_dists: List[str]
    base_dir: str
    staging_dir: str
    command: str
    needs_network: bool
    install: bool
    libraries: List[CustomLibrary] = field(default_factory=list)
    dependencies: Dict[str, str] = field(default_factory=dict)


@dataclass(eq=False)
class ExecutionSession:
    id: str
    language: str
    channel: OutputChannel
    state: Optional[SessionState] = None
    handle: Optional[ContainerHandle] = None
    base_dir: Optional[str] = None
    stream: Optional[ExecStream] = None
    stdin_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending_input: List[bytes] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    task: Optional[asyncio.Task] = None
    torn_down: bool = False
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def terminal(self) -> bool:
        return self.state is not None and self.state.terminal

    def transition(self, new: SessionState) -> None:
        if self.terminal:
            raise InvalidTransition(f"session {self.id} is already {self.state.value}")
        allowed = TRANSITIONS.get(self.state, frozenset())
        if new not in allowed and not (self.state is not None and new in (SessionState.FAILED, SessionState.STOPPED)):
            current = self.state.value if self.state else "new"
            raise InvalidTransition(f"session {self.id}: {current} -> {new.value} is not allowed")
        log.debug("session_state", session_id=self.id, old=self.state.value if self.state else None, new=new.value)
        self.state = new
        if new.terminal:
            self.finished_at = time.time()

    def snapshot(self) -> dict:
        return {
            "session_id": self.id,
            "language": self.language,
            "state": self.state.value if self.state else None,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "container": self.handle.name if self.handle else None,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


def build_start_spec(
    settings: Settings,
    *,
    session_id: str,
    language: str,
    code: Optional[str] = None,
    files: Optional[Sequence[tuple]] = None,
    main_file: Optional[str] = None,
    main_class: Optional[str] = None,
    dependencies: Optional[Mapping[str, str]] = None,
    libraries: Sequence[CustomLibrary] = (),
) -> StartSpec:
    """Validate a start request into a ``StartSpec``. ``files`` holds ``(path, text)`` pairs."""
    check_session_id(session_id)
    profile = get_profile(language)

    raw: List[tuple] = list(files or [])
    if not raw:
        if code is None or not code.strip():
            raise ValidationError("either code or files must be provided")
        raw = [(main_file or default_entry_for(profile.name, code), code)]
    elif code is not None and code.strip():
        raise ValidationError("provide either code or files, not both")

    if len(raw) > settings.max_files:
        raise ValidationError(f"too many files ({len(raw)} > {settings.max_files})")

    seen: Dict[str, ProjectFile] = {}
    for path, text in raw:
        clean = normalize_path(path)
        if clean in seen:
            raise ValidationError(f"duplicate file path: {clean}")
        content = text.encode("utf-8") if isinstance(text, str) else bytes(text)
        if len(content) > settings.max_source_bytes:
            raise ValidationError(f"{clean} exceeds {settings.max_source_bytes} bytes")
        seen[clean] = ProjectFile(clean, content)

    if main_file:
        entry = normalize_path(main_file)
    elif len(seen) == 1:
        entry = next(iter(seen))
    else:
        entry = default_entry_for(profile.name)
        if entry not in seen:
            # fall back to the first source file of the language, in submission order
            entry = next((p for p in seen if profile.is_source(p)), entry)
    if entry not in seen:
        raise ValidationError(f"entry file '{entry}' is not among the submitted files")
    if not profile.is_source(entry):
        raise ValidationError(f"entry file '{entry}' is not a {profile.name} source file")

    out = [ProjectFile(f.path, f.content, FileRole.ENTRY if f.path == entry else FileRole.SUPPORT)
           for f in seen.values()]
    deps = {str(k): str(v) for k, v in (dependencies or {}).items()}
    return StartSpec(session_id=session_id, language=profile.name, files=out,
                     main_class=main_class or None, dependencies=deps, libraries=list(libraries))


def _transient(exc: BaseException) -> bool:
    return isinstance(exc, ProvisionError) and exc.transient


class SessionService:
    """Owns every live session: runs its pipeline, relays its stdin and guarantees its container goes away."""

    def __init__(
        self,
        backend: ContainerBackend,
        settings: Settings,
        library_store: Optional[LibraryStore] = None,
        *,
        registry: Optional[SessionRegistry] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.backend = backend
        self.s = settings
        self.library_store = library_store
        self.registry = registry or SessionRegistry()
        self.retry = retry or RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        self.workspace = WorkspaceBuilder(
            backend,
            workspace_root=settings.workspace_root,
            staging_root=settings.staging_root,
            uid=settings.sandbox_uid,
            gid=settings.sandbox_gid,
        )
        self.installer = DependencyInstaller(backend, settings)
        self._background: Set[asyncio.Task] = set()

    # ------------ public API ------------

    def load_libraries(self, project_id: Optional[str], refs: Sequence[str]) -> List[CustomLibrary]:
        if self.library_store is None:
            if refs:
                raise ValidationError("custom libraries are not available on this server")
            return []
        return resolve_libraries(self.library_store, project_id, refs)

    def plan(self, spec: StartSpec) -> SessionPlan:
        profile = get_profile(spec.language)
        files = list(spec.files) + derived_manifests(profile.name, spec.files, spec.dependencies)
        library_files = plan_library_layout(profile.name, spec.libraries)
        dists = python_dists(spec.libraries) if profile.name == "python" else []
        base_dir = self.workspace.base_dir(spec.session_id)
        command = build_command(
            profile.name,
            files,
            spec.entry_file,
            base_dir=base_dir,
            main_class=spec.main_class,
            libraries=library_files,
        )
        return SessionPlan(
            files=files,
            library_files=library_files,
            python_dists=dists,
            base_dir=base_dir,
            staging_dir=self.workspace.staging_dir(spec.session_id),
            command=command,
            needs_network=needs_network(profile.name, spec.dependencies, spec.files),
            install=has_manifest(profile.name, files),
            libraries=list(spec.libraries),
            dependencies=dict(spec.dependencies),
        )

    async def start(self, spec: StartSpec) -> ExecutionSession:
        check_session_id(spec.session_id)
        plan = self.plan(spec)

        session = ExecutionSession(id=spec.session_id, language=spec.language,
                                   channel=OutputChannel(spec.session_id, self.s.max_buffered_output))
        session.transition(SessionState.PROVISIONING)
        previous = self.registry.put(session)
        if previous is not None:
            log.info("session_superseded", session_id=spec.session_id)
            await self._stop_session(previous, "superseded")

        session.task = asyncio.create_task(self._pipeline(session, plan), name=f"session-{session.id}")
        log.info("session_started", session_id=session.id, language=session.language,
                 files=len(plan.files), network=plan.needs_network, install=plan.install)
        return session

    async def send_input(self, session_id: str, text: str) -> None:
        session = self.registry.get(session_id)
        if session is None or session.terminal:
            raise SessionNotFoundError(session_id)
        data = (text + "\n").encode("utf-8")
        async with session.stdin_lock:
            if session.stream is None:
                # not attached yet; flushed in order once the process starts
                session.pending_input.append(data)
                return
            try:
                await session.stream.write(data)
            except OSError as e:
                raise StreamError(f"stdin of session {session_id} is closed: {e}") from e

    async def stop(self, session_id: str, reason: str = "stopped") -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        await self._stop_session(session, reason)
        return True

    def stop_soon(self, session: ExecutionSession, reason: str) -> None:
        """Stop ``session`` from a context that cannot await, e.g. a dropped event stream."""
        task = asyncio.ensure_future(self._stop_session(session, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def status(self, session_id: str) -> dict:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session.snapshot()

    def get(self, session_id: str) -> ExecutionSession:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def run_to_completion(self, spec: StartSpec) -> dict:
        """Batch mode: run the session and fold its events into one result."""
        session = await self.start(spec)
        stdout: List[str] = []
        stderr: List[str] = []
        error = None
        async for event in session.channel.events():
            if event.type is EventType.STDOUT:
                stdout.append(event.data)
            elif event.type is EventType.STDERR:
                stderr.append(event.data)
            elif event.type is EventType.ERROR:
                error = event.data
        return {
            "stdout": "".join(stdout),
            "stderr": "".join(stderr),
            "exit_code": session.exit_code,
            "status": session.state.value,
            "error": error,
        }

    async def shutdown(self) -> None:
        ids = self.registry.ids()
        for sid in ids:
            await self.stop(sid, reason="shutdown")
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        try:
            removed = await self.backend.sweep()
        except ExecboxError as e:
            log.warning("sweep_failed", error=str(e))
            removed = 0
        log.info("session_service_shutdown", stopped=len(ids), swept=removed)

    # ------------ pipeline ------------

    async def _pipeline(self, session: ExecutionSession, plan: SessionPlan) -> None:
        try:
            exit_code = await self._execute(session, plan)
        except asyncio.CancelledError:
            if not session.terminal:
                session.transition(SessionState.STOPPED)
                session.reason = "cancelled"
                session.channel.end()
            raise
        except ExecboxError as e:
            self._fail(session, e)
        except Exception as e:  # noqa: BLE001
            log.exception("session_crashed", session_id=session.id)
            self._fail(session, ExecboxError(f"internal error: {e}"))
        else:
            if session.terminal:
                return
            session.exit_code = exit_code
            session.transition(SessionState.COMPLETED)
            session.channel.end(exit_code)
            log.info("session_completed", session_id=session.id, exit_code=exit_code)

        # completed or failed: leave a short window for final reads, then clean up
        await asyncio.sleep(self.s.grace_s)
        await self._teardown(session)

    async def _execute(self, session: ExecutionSession, plan: SessionPlan) -> Optional[int]:
        handle = await self._provision(session, plan.needs_network)

        session.transition(SessionState.WORKSPACE)
        session.base_dir = await self.workspace.materialize(handle, plan.files)
        await self.workspace.stage_libraries(handle, plan.libraries)

        if plan.install:
            session.transition(SessionState.INSTALLING)
            outcome = await self.installer.install(handle, session.language, plan.base_dir, plan.files,
                                                   plan.dependencies)
            log.info("dependencies_ready", session_id=session.id, cached=outcome.cached,
                     duration_s=round(outcome.duration_s, 2))

        await self._merge_libraries(session, handle, plan)

        session.transition(SessionState.RUNNING)
        session.stream = await self.retry.run(
            lambda: self.backend.open_stream(handle, plan.command),
            _transient,
            step="attach",
        )
        async with session.stdin_lock:
            for data in session.pending_input:
                await session.stream.write(data)
            session.pending_input.clear()

        try:
            return await asyncio.wait_for(self._pump(session), self.s.exec_timeout_s)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError("execution", self.s.exec_timeout_s) from e

    async def _provision(self, session: ExecutionSession, network: bool) -> ContainerHandle:
        fut = asyncio.ensure_future(self.retry.run(
            lambda: self.backend.provision(session.language, session.id, network),
            _transient,
            step="provision",
        ))
        try:
            handle = await asyncio.shield(fut)
        except asyncio.CancelledError:
            # the container may still come up after the session was stopped
            fut.add_done_callback(lambda f: self._reap_late(session, f))
            raise
        session.handle = handle
        return handle

    def _reap_late(self, session: ExecutionSession, fut: asyncio.Future) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        handle = fut.result()
        log.info("reaping_late_container", session_id=session.id, container=handle.name)
        task = asyncio.ensure_future(self._teardown_handle(session.id, handle))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _merge_libraries(self, session: ExecutionSession, handle: ContainerHandle, plan: SessionPlan) -> None:
        if not plan.library_files and not plan.python_dists:
            return
        if plan.library_files:
            await self.workspace.write(handle, plan.base_dir, plan.library_files)
            log.info("custom_libraries_merged", session_id=session.id, files=len(plan.library_files))
        command = python_install_command(plan.base_dir, plan.staging_dir, plan.python_dists)
        if command:
            timeout = self.installer.timeout_for(get_profile(session.language))
            res = await self.backend.exec(handle, command, timeout=timeout)
            if not res.ok:
                raise DependencyInstallError("custom library install failed", log=excerpt(res.output),
                                             exit_code=res.exit_code)

    async def _pump(self, session: ExecutionSession) -> Optional[int]:
        stream = session.stream
        demux = TextDemuxer()
        while True:
            try:
                chunk = await stream.read()
            except OSError as e:
                raise StreamError(f"output stream broke: {e}") from e
            if not chunk:
                break
            for channel, text in demux.feed(chunk):
                await session.channel.put(OutputEvent(channel, text))
        for channel, text in demux.flush():
            await session.channel.put(OutputEvent(channel, text))

        for _ in range(EXIT_CODE_POLLS):
            code = await stream.exit_code()
            if code is not None:
                return code
            await asyncio.sleep(EXIT_CODE_POLL_S)
        log.warning("exit_code_unavailable", session_id=session.id)
        return None

    def _fail(self, session: ExecutionSession, exc: ExecboxError) -> None:
        if session.terminal:
            return
        message = exc.message or exc.code
        if isinstance(exc, DependencyInstallError) and exc.log:
            message = f"{message}\n{exc.log}"
        session.reason = exc.code
        session.transition(SessionState.FAILED)
        session.channel.error(excerpt(message))
        log.warning("session_failed", session_id=session.id, error=exc.code, message=exc.message)

    # ------------ teardown ------------

    async def _stop_session(self, session: ExecutionSession, reason: str) -> None:
        if not session.terminal:
            session.transition(SessionState.STOPPED)
            session.reason = reason
            session.channel.end()
            log.info("session_stopped", session_id=session.id, reason=reason)
        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
        await self._teardown(session)

    async def _teardown(self, session: ExecutionSession) -> None:
        if session.torn_down:
            await session.closed.wait()
            return
        session.torn_down = True
        try:
            if session.stream is not None:
                await session.stream.close()
            if session.handle is not None:
                await self._teardown_handle(session.id, session.handle)
        finally:
            self.registry.remove(session.id, session)
            session.closed.set()

    async def _teardown_handle(self, session_id: str, handle: ContainerHandle) -> None:
        try:
            await self.backend.teardown(handle)
        except CleanupError as e:
            log.warning("teardown_failed", session_id=session_id, container=handle.name, error=str(e))
