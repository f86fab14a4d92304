import asyncio
import io
import json
import tarfile

import pytest

from execbox.core.errors import SessionNotFoundError, ValidationError
from execbox.core.models import CustomLibrary, EventType, SessionState
from execbox.services.demux import encode_frame
from execbox.services.session_service import build_start_spec

from conftest import FakeStream

HELLO = {
    "python": ("main.py", 'print("hi")\n'),
    "javascript": ("main.js", 'console.log("hi")\n'),
    "java": ("Main.java", 'public class Main { public static void main(String[] a) { System.out.println("hi"); } }\n'),
    "cpp": ("main.cpp", '#include <iostream>\nint main() { std::cout << "hi\\n"; }\n'),
    "go": ("main.go", 'package main\nimport "fmt"\nfunc main() { fmt.Println("hi") }\n'),
}


def spec(settings, sid="s1", language="python", **kw):
    if "files" not in kw and "code" not in kw:
        kw["code"] = HELLO[language][1]
    return build_start_spec(settings, session_id=sid, language=language, **kw)


async def finished(session, timeout=2.0):
    await asyncio.wait_for(session.closed.wait(), timeout)


@pytest.mark.asyncio
@pytest.mark.parametrize("language", sorted(HELLO))
async def test_hello_world_every_language(service, backend, settings, language):
    session = await service.start(spec(settings, language=language))
    events = await session.channel.collect()

    assert [e.to_dict() for e in events] == [
        {"type": "stdout", "data": "hi\n"},
        {"type": "end", "data": "", "exit_code": 0},
    ]
    await finished(session)
    assert session.state is SessionState.COMPLETED
    assert "s1" not in service.registry
    assert backend.live == {}


@pytest.mark.asyncio
async def test_python_scenario_workspace_and_command(service, backend, settings):
    session = await service.start(spec(settings, code='print("hi")'))
    await session.channel.collect()
    await finished(session)

    assert backend.archive_members()["workspace/s1/main.py"] == b'print("hi")'
    assert backend.commands == ["cd /workspace/s1 && PYTHONPATH=/workspace/s1 "
                                "PYTHONUSERBASE=/workspace/s1/.pyuser python3 -u main.py"]
    # nothing to install, no network
    assert backend.execs == []
    assert backend.provisioned[0].network is False


@pytest.mark.asyncio
async def test_interleaved_output_keeps_arrival_order(service, backend, settings):
    wire = (encode_frame(EventType.STDOUT, b"a") + encode_frame(EventType.STDERR, b"b")
            + encode_frame(EventType.STDOUT, b"c"))
    backend.program = lambda cmd: FakeStream([wire[:5], wire[5:14], wire[14:]], exit_code=3)
    session = await service.start(spec(settings))
    events = await session.channel.collect()
    assert [(e.type.value, e.data) for e in events] == [("stdout", "a"), ("stderr", "b"), ("stdout", "c"), ("end", "")]
    assert events[-1].exit_code == 3
    # a non-zero exit is still a completed run
    assert session.state is SessionState.COMPLETED


@pytest.mark.asyncio
async def test_java_solver_class(service, backend, settings):
    code = "public class Solver { public static void main(String[] a) {} }"
    session = await service.start(spec(settings, language="java", code=code))
    await session.channel.collect()
    assert backend.archive_members()["workspace/s1/Solver.java"] == code.encode()
    assert backend.commands[0].endswith("java -cp '.:lib/*' Solver")


@pytest.mark.asyncio
async def test_restart_same_id_supersedes(service, backend, settings):
    backend.program = lambda cmd: FakeStream([], hold_open=True)
    first = await service.start(spec(settings))
    await asyncio.sleep(0.01)
    second = await service.start(spec(settings))
    await asyncio.sleep(0.01)

    assert first.state is SessionState.STOPPED
    assert first.reason == "superseded"
    assert service.registry.get("s1") is second
    assert len(backend.live) == 1
    assert list(backend.live.values())[0] is backend.provisioned[-1]

    await service.stop("s1")
    assert backend.live == {}


@pytest.mark.asyncio
async def test_stop_twice_is_harmless(service, backend, settings):
    backend.program = lambda cmd: FakeStream([], hold_open=True)
    session = await service.start(spec(settings))
    await asyncio.sleep(0.01)

    assert await service.stop("s1") is True
    assert await service.stop("s1") is False
    events = await session.channel.collect()
    assert [e.type for e in events] == [EventType.END]
    assert session.state is SessionState.STOPPED
    assert "s1" not in service.registry
    assert backend.live == {}
    assert backend.streams[0].closed


@pytest.mark.asyncio
async def test_stop_during_provisioning(service, backend, settings):
    gate = asyncio.Event()
    real_provision = backend.provision

    async def slow_provision(*args):
        await gate.wait()
        return await real_provision(*args)

    backend.provision = slow_provision
    session = await service.start(spec(settings))
    await asyncio.sleep(0)
    await service.stop("s1")
    gate.set()
    await asyncio.sleep(0.05)

    assert session.state is SessionState.STOPPED
    # the container that came up after the stop is reaped
    assert backend.live == {}


@pytest.mark.asyncio
async def test_input_for_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        await service.send_input("ghost", "x")
    assert len(service.registry) == 0


@pytest.mark.asyncio
async def test_input_is_relayed_in_order(service, backend, settings):
    backend.program = lambda cmd: FakeStream([], echo=True, echo_lines=3)
    session = await service.start(spec(settings, code="print(input())"))
    # sent before the process is attached, then while it runs
    await service.send_input("s1", "one")
    await asyncio.sleep(0.01)
    await asyncio.gather(service.send_input("s1", "two"), service.send_input("s1", "three"))

    events = await session.channel.collect()
    assert "".join(e.data for e in events if e.type is EventType.STDOUT) == "one\ntwo\nthree\n"
    assert backend.streams[0].written == [b"one\n", b"two\n", b"three\n"]


@pytest.mark.asyncio
async def test_install_timeout_fails_and_cleans_up(service, backend, settings):
    backend.exec_rules.insert(0, ("pip install", 5.0))
    session = await service.start(spec(settings, dependencies={"requests": "*"}))
    events = await asyncio.wait_for(session.channel.collect(), 2)

    assert [e.type for e in events] == [EventType.ERROR]
    assert "exceeded" in events[0].data
    await finished(session)
    assert session.state is SessionState.FAILED
    assert backend.live == {}
    assert backend.provisioned[0].network is True
    assert backend.commands == []


@pytest.mark.asyncio
async def test_execution_timeout(service, backend, settings):
    settings.exec_timeout_s = 0.05
    backend.program = lambda cmd: FakeStream([encode_frame(EventType.STDOUT, b"tick\n")], hold_open=True)
    session = await service.start(spec(settings))
    events = await asyncio.wait_for(session.channel.collect(), 2)
    assert [e.type for e in events] == [EventType.STDOUT, EventType.ERROR]
    await finished(session)
    assert session.state is SessionState.FAILED
    assert backend.live == {}


@pytest.mark.asyncio
async def test_transient_provision_errors_are_retried(service, backend, settings, transient):
    backend.provision_failures = [transient(), transient()]
    session = await service.start(spec(settings))
    events = await session.channel.collect()
    assert events[-1].type is EventType.END


@pytest.mark.asyncio
async def test_provision_gives_up_after_bounded_attempts(service, backend, settings, transient):
    backend.provision_failures = [transient(), transient(), transient(), transient()]
    session = await service.start(spec(settings))
    events = await session.channel.collect()
    assert [e.type for e in events] == [EventType.ERROR]
    await finished(session)
    assert session.state is SessionState.FAILED
    assert len(backend.provision_failures) == 1


@pytest.mark.asyncio
async def test_truncated_output_is_a_stream_error(service, backend, settings):
    backend.program = lambda cmd: FakeStream([encode_frame(EventType.STDOUT, b"partial")[:-3]])
    session = await service.start(spec(settings))
    events = await session.channel.collect()
    assert events[-1].type is EventType.ERROR
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_js_custom_library_is_merged_after_install(service, backend, settings):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in {"package/package.json": json.dumps({"name": "foo"}).encode(),
                           "package/index.js": b"module.exports = 'foo';\n"}.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    lib = CustomLibrary("p1", "foo-1.0.0.tgz", buf.getvalue())
    files = [("main.js", "console.log(require('foo'))\n"), ("util/helper.js", "module.exports = 1\n")]
    session = await service.start(spec(settings, language="javascript", files=files,
                                       main_file="main.js", dependencies={"lodash": "*"}, libraries=[lib]))
    await session.channel.collect()

    members = backend.archive_members()
    assert members["custom-libs/s1/foo-1.0.0.tgz"] == lib.content
    assert members["workspace/s1/node_modules/foo/index.js"] == b"module.exports = 'foo';\n"
    assert any("npm install" in c for c, _u in backend.execs)
    # workspace, staging, then the merge once npm is done with node_modules
    assert len(backend.archives) == 3
    assert b"node_modules/foo" in backend.archives[2][1]


def test_start_spec_validation(settings):
    with pytest.raises(ValidationError):
        build_start_spec(settings, session_id="s1", language="python")
    with pytest.raises(ValidationError):
        build_start_spec(settings, session_id="s1", language="python", files=[("../x.py", "")])
    with pytest.raises(ValidationError):
        build_start_spec(settings, session_id="s1", language="python", code="x" * 2000)
    with pytest.raises(ValidationError):
        build_start_spec(settings, session_id="s1", language="python", files=[(f"f{i}.py", "") for i in range(6)])
    with pytest.raises(ValidationError):
        build_start_spec(settings, session_id="s1", language="python",
                         files=[("a.py", ""), ("b.py", "")], main_file="c.py")

    s = build_start_spec(settings, session_id="s1", language="python",
                         files=[("lib/util.py", ""), ("app.py", "")])
    assert s.entry_file == "lib/util.py"
    s = build_start_spec(settings, session_id="s1", language="java", code="public class Solver {}")
    assert s.entry_file == "Solver.java"


@pytest.mark.asyncio
async def test_unread_output_pauses_reading_from_the_process(service, backend, settings):
    settings.max_buffered_output = 10
    backend.program = lambda cmd: FakeStream([encode_frame(EventType.STDOUT, b"0123456789")] * 50)
    session = await service.start(spec(settings))
    await asyncio.sleep(0.05)

    assert session.state is SessionState.RUNNING
    assert session.channel.buffered <= 10
    assert backend.streams[0]._queue.qsize() > 40

    events = await session.channel.collect()
    assert "".join(e.data for e in events if e.type is EventType.STDOUT) == "0123456789" * 50
    assert events[-1].type is EventType.END


@pytest.mark.asyncio
async def test_sessions_sharing_an_install_time_out_together(service, backend, settings):
    backend.exec_rules.insert(0, ("pip install", 5.0))
    loop = asyncio.get_running_loop()
    started = loop.time()
    first = await service.start(spec(settings, sid="s1", dependencies={"requests": "*"}))
    second = await service.start(spec(settings, sid="s2", dependencies={"requests": "*"}))
    results = await asyncio.gather(first.channel.collect(), second.channel.collect())
    elapsed = loop.time() - started

    assert [[e.type for e in events] for events in results] == [[EventType.ERROR], [EventType.ERROR]]
    # the second session waited on the first one's install within its own timeout
    assert elapsed < 0.35
    await finished(first)
    await finished(second)
    assert backend.live == {}
