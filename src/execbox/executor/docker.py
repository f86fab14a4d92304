# src/execbox/executor/docker.py
from __future__ import annotations

import asyncio
import socket
import threading
from typing import Dict, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..core.errors import CleanupError, ExecutionTimeoutError, ProvisionError, WorkspaceWriteError
from ..core.languages import get_profile
from ..core.models import ExecResult
from ..settings import Settings
from .base import ContainerBackend, ContainerHandle, ExecStream

log = structlog.get_logger(__name__)

MANAGED_LABEL = "execbox.managed"
SESSION_LABEL = "execbox.session"
LANGUAGE_LABEL = "execbox.language"

# keeps the container alive between execs; exits promptly on SIGTERM
IDLE_COMMAND = ["sh", "-c", "trap 'exit 0' TERM; while :; do sleep 1; done"]


def _status(exc: APIError) -> Optional[int]:
    resp = getattr(exc, "response", None)
    return getattr(resp, "status_code", None)


class DockerExecStream(ExecStream):
    """Raw hijacked socket of a ``docker exec`` started with stdin attached."""

    def __init__(self, client: docker.DockerClient, exec_id: str, sock):
        self._client = client
        self._exec_id = exec_id
        self._sock = sock
        self._raw = getattr(sock, "_sock", sock)
        self._closed = threading.Event()

    async def read(self, size: int = 65536) -> bytes:
        if self._closed.is_set():
            return b""
        try:
            return await asyncio.to_thread(self._raw.recv, size)
        except OSError:
            if self._closed.is_set():
                return b""
            raise

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._raw.sendall, data)

    async def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # shutdown wakes a recv() blocked in another thread; close alone does not
        try:
            self._raw.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass

    async def exit_code(self) -> Optional[int]:
        info = await asyncio.to_thread(self._client.api.exec_inspect, self._exec_id)
        if info.get("Running"):
            return None
        return info.get("ExitCode")


class DockerBackend(ContainerBackend):
    """Container provisioner on top of the Docker SDK. Blocking SDK calls run in worker threads."""

    def __init__(self, settings: Settings, client: Optional[docker.DockerClient] = None):
        self.s = settings
        self._client = client
        self._client_lock = threading.Lock()

    # ------------ client ------------

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    try:
                        if self.s.docker_base_url:
                            self._client = docker.DockerClient(base_url=self.s.docker_base_url)
                        else:
                            self._client = docker.from_env()
                    except DockerException as e:
                        raise ProvisionError(f"container engine unreachable: {e}", transient=True) from e
        return self._client

    def container_name(self, session_id: str) -> str:
        return f"{self.s.container_prefix}-{session_id}"

    # ------------ lifecycle ------------

    async def provision(self, language: str, session_id: str, needs_network: bool) -> ContainerHandle:
        return await asyncio.to_thread(self._provision, language, session_id, needs_network)

    def _provision(self, language: str, session_id: str, needs_network: bool) -> ContainerHandle:
        profile = get_profile(language)
        image = self.s.image_for(profile.name, profile.image)
        name = self.container_name(session_id)
        labels = {MANAGED_LABEL: self.s.container_prefix, SESSION_LABEL: session_id, LANGUAGE_LABEL: profile.name}

        self._remove_by_name(name)

        kwargs = dict(
            image=image,
            command=IDLE_COMMAND,
            name=name,
            detach=True,
            init=True,
            labels=labels,
            mem_limit=self.s.memory_limit,
            nano_cpus=self.s.nano_cpus,
            pids_limit=self.s.pids_limit,
            security_opt=["no-new-privileges"],
            tmpfs={"/tmp": f"rw,exec,nosuid,size={self.s.tmpfs_size}"},
            volumes={
                f"{self.s.container_prefix}-{profile.name}-deps": {"bind": self.s.cache_root, "mode": "rw"},
            },
            network_mode="bridge" if needs_network else "none",
        )
        if needs_network:
            kwargs["dns"] = list(self.s.dns_servers)

        try:
            container = self.client.containers.run(**kwargs)
        except ImageNotFound as e:
            raise ProvisionError(f"image '{image}' not found", detail=str(e)) from e
        except APIError as e:
            status = _status(e)
            # 409: previous container with this name still being removed
            transient = status is None or status == 409 or status >= 500
            raise ProvisionError(f"container create failed: {e.explanation or e}", transient=transient) from e
        except (DockerException, OSError) as e:
            raise ProvisionError(f"container engine unreachable: {e}", transient=True) from e

        log.info("container_provisioned", session_id=session_id, container=container.short_id,
                 image=image, network=needs_network)
        return ContainerHandle(
            id=container.id,
            name=name,
            language=profile.name,
            session_id=session_id,
            image=image,
            network=needs_network,
            labels=labels,
        )

    def _remove_by_name(self, name: str) -> None:
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        except (DockerException, OSError) as e:
            raise ProvisionError(f"container engine unreachable: {e}", transient=True) from e
        log.info("removing_existing_container", container=name)
        try:
            existing.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            if _status(e) != 409:
                raise ProvisionError(f"could not remove stale container {name}: {e}", transient=True) from e

    async def teardown(self, handle: ContainerHandle) -> None:
        await asyncio.to_thread(self._teardown, handle)

    def _teardown(self, handle: ContainerHandle) -> None:
        try:
            container = self.client.containers.get(handle.id)
        except NotFound:
            return
        except (DockerException, OSError) as e:
            raise CleanupError(f"teardown of {handle.name} failed: {e}") from e
        try:
            container.stop(timeout=self.s.stop_timeout_s)
        except NotFound:
            return
        except APIError as e:
            # 304 already stopped, 409 removal in progress
            if _status(e) not in (304, 404, 409):
                log.warning("container_stop_failed", container=handle.name, error=str(e))
        try:
            container.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            if _status(e) not in (404, 409):
                raise CleanupError(f"remove of {handle.name} failed: {e}") from e
        log.info("container_removed", session_id=handle.session_id, container=handle.name)

    async def sweep(self) -> int:
        """Remove every container this service labelled, e.g. leftovers of a crashed process."""
        return await asyncio.to_thread(self._sweep)

    def _sweep(self) -> int:
        removed = 0
        flt = {"label": f"{MANAGED_LABEL}={self.s.container_prefix}"}
        try:
            containers = self.client.containers.list(all=True, filters=flt)
        except (DockerException, OSError) as e:
            raise CleanupError(f"sweep failed: {e}") from e
        for container in containers:
            try:
                container.remove(force=True)
                removed += 1
            except (NotFound, APIError):
                continue
        return removed

    # ------------ file transfer ------------

    async def put_archive(self, handle: ContainerHandle, path: str, data: bytes) -> None:
        try:
            ok = await asyncio.to_thread(self.client.api.put_archive, handle.id, path, data)
        except (DockerException, OSError) as e:
            raise WorkspaceWriteError(f"archive upload to {path} failed: {e}") from e
        if not ok:
            raise WorkspaceWriteError(f"archive upload to {path} was rejected")

    # ------------ exec ------------

    async def exec(
        self,
        handle: ContainerHandle,
        command: str,
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
    ) -> ExecResult:
        call = asyncio.to_thread(self._exec, handle, command, env, user)
        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            # the worker thread returns once the container is torn down
            raise ExecutionTimeoutError("command", timeout) from e

    def _exec(self, handle: ContainerHandle, command: str, env, user) -> ExecResult:
        kwargs = {"environment": env or None}
        if user:
            kwargs["user"] = user
        try:
            container = self.client.containers.get(handle.id)
            res = container.exec_run(["sh", "-c", command], stdout=True, stderr=True, **kwargs)
        except (DockerException, OSError) as e:
            raise ProvisionError(f"exec in {handle.name} failed: {e}") from e
        out = res.output.decode("utf-8", errors="replace") if res.output else ""
        return ExecResult(exit_code=res.exit_code if res.exit_code is not None else -1, output=out)

    async def open_stream(
        self,
        handle: ContainerHandle,
        command: str,
        *,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecStream:
        return await asyncio.to_thread(self._open_stream, handle, command, env)

    def _open_stream(self, handle: ContainerHandle, command: str, env) -> DockerExecStream:
        api = self.client.api
        try:
            created = api.exec_create(
                handle.id, ["sh", "-c", command],
                stdin=True, stdout=True, stderr=True, tty=False,
                environment=env or None,
            )
            sock = api.exec_start(created["Id"], socket=True, tty=False)
        except NotFound as e:
            raise ProvisionError(f"container {handle.name} vanished before attach", detail=str(e)) from e
        except (DockerException, OSError) as e:
            raise ProvisionError(f"attach to {handle.name} failed: {e}", transient=True) from e
        return DockerExecStream(self.client, created["Id"], sock)

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except (ProvisionError, DockerException, OSError):
            return False
