import asyncio
import io
import tarfile
from typing import Dict, List, Optional, Tuple

import pytest

from execbox.core.errors import ExecutionTimeoutError, ProvisionError
from execbox.core.models import EventType, ExecResult
from execbox.core.retry import RetryPolicy
from execbox.executor.base import ContainerBackend, ContainerHandle, ExecStream
from execbox.services.demux import encode_frame
from execbox.services.session_service import SessionService
from execbox.settings import Settings


class FakeStream(ExecStream):
    """Scripted exec stream. With ``echo`` every stdin line comes back on stdout."""

    def __init__(self, frames: List[bytes], exit_code: Optional[int] = 0, *,
                 hold_open: bool = False, echo: bool = False, echo_lines: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue()
        for f in frames:
            self._queue.put_nowait(f)
        if not hold_open and not echo:
            self._queue.put_nowait(b"")
        self._exit = exit_code
        self.echo = echo
        self.echo_lines = echo_lines
        self.written: List[bytes] = []
        self.closed = False

    async def read(self, size: int = 65536) -> bytes:
        if self.closed:
            return b""
        return await self._queue.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)
        if self.echo:
            self._queue.put_nowait(encode_frame(EventType.STDOUT, data))
            if self.echo_lines and len(self.written) >= self.echo_lines:
                self._queue.put_nowait(b"")

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(b"")

    async def exit_code(self) -> Optional[int]:
        return self._exit


class FakeBackend(ContainerBackend):
    """In-memory container engine: records everything, runs nothing."""

    def __init__(self):
        self.live: Dict[str, ContainerHandle] = {}
        self.provisioned: List[ContainerHandle] = []
        self.removed: List[str] = []
        self.archives: List[Tuple[str, bytes]] = []
        self.execs: List[Tuple[str, Optional[str]]] = []
        self.commands: List[str] = []
        self.streams: List[FakeStream] = []
        # (substring, ExecResult | seconds to hang | exception | callable(command))
        self.exec_rules: List[tuple] = [("test -f", ExecResult(1))]
        self.provision_failures: List[Exception] = []
        self.attach_failures: List[Exception] = []
        self.program = lambda command: FakeStream([encode_frame(EventType.STDOUT, b"hi\n")])
        self._n = 0

    async def provision(self, language, session_id, needs_network):
        if self.provision_failures:
            raise self.provision_failures.pop(0)
        self._n += 1
        handle = ContainerHandle(id=f"c{self._n}", name=f"execbox-{session_id}", language=language,
                                 session_id=session_id, image=f"execbox-{language}", network=needs_network)
        # same-name container is replaced, as the real engine does
        for cid, h in list(self.live.items()):
            if h.name == handle.name:
                del self.live[cid]
        self.live[handle.id] = handle
        self.provisioned.append(handle)
        return handle

    async def teardown(self, handle):
        self.removed.append(handle.id)
        self.live.pop(handle.id, None)

    async def put_archive(self, handle, path, data):
        self.archives.append((handle.id, data))

    async def exec(self, handle, command, *, timeout=None, env=None, user=None):
        self.execs.append((command, user))
        for needle, outcome in self.exec_rules:
            if needle not in command:
                continue
            if isinstance(outcome, Exception):
                raise outcome
            if callable(outcome):
                return outcome(command)
            if isinstance(outcome, (int, float)):
                try:
                    await asyncio.wait_for(asyncio.sleep(outcome), timeout)
                except asyncio.TimeoutError:
                    raise ExecutionTimeoutError("command", timeout)
                return ExecResult(0)
            return outcome
        return ExecResult(0)

    async def open_stream(self, handle, command, *, env=None):
        if self.attach_failures:
            raise self.attach_failures.pop(0)
        self.commands.append(command)
        stream = self.program(command)
        self.streams.append(stream)
        return stream

    async def ping(self):
        return True

    def archive_members(self) -> Dict[str, bytes]:
        out: Dict[str, bytes] = {}
        for _cid, data in self.archives:
            with tarfile.open(fileobj=io.BytesIO(data)) as tar:
                for m in tar.getmembers():
                    f = tar.extractfile(m) if m.isfile() else None
                    out[m.name] = f.read() if f else b""
        return out


@pytest.fixture
def settings():
    return Settings(
        grace_s=0.01,
        exec_timeout_s=5.0,
        retry_base_delay_s=0.0,
        retry_max_delay_s=0.0,
        install_timeouts={"python": 0.2},
        max_source_bytes=1000,
        max_files=5,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def service(backend, settings):
    return SessionService(backend, settings, retry=RetryPolicy(attempts=3, base_delay=0, max_delay=0))


@pytest.fixture
def transient():
    return lambda: ProvisionError("engine busy", transient=True)
