import asyncio

import pytest

from execbox.core.models import EventType, OutputEvent
from execbox.services.transport import OutputChannel


def out(text):
    return OutputEvent(EventType.STDOUT, text)


@pytest.mark.asyncio
async def test_put_waits_for_the_reader():
    channel = OutputChannel("s1", max_buffered=4)
    await channel.put(out("abcd"))
    blocked = asyncio.ensure_future(channel.put(out("efgh")))
    await asyncio.sleep(0.01)
    assert not blocked.done()
    assert channel.buffered == 4

    events = channel.events()
    assert (await events.__anext__()).data == "abcd"
    assert await asyncio.wait_for(blocked, 1) is True
    channel.end(0)
    rest = [e async for e in events]
    assert [(e.type, e.data) for e in rest] == [(EventType.STDOUT, "efgh"), (EventType.END, "")]
    assert channel.buffered == 0


@pytest.mark.asyncio
async def test_terminal_event_is_never_held_back():
    channel = OutputChannel("s1", max_buffered=1)
    await channel.put(out("x"))
    blocked = asyncio.ensure_future(channel.put(out("y")))
    await asyncio.sleep(0)

    assert channel.end() is True
    # the waiting producer is released and its late output dropped
    assert await asyncio.wait_for(blocked, 1) is False
    assert [e.type for e in await channel.collect()] == [EventType.STDOUT, EventType.END]


@pytest.mark.asyncio
async def test_one_terminal_event_and_one_consumer():
    channel = OutputChannel("s1")
    assert channel.error("boom") is True
    assert channel.end(0) is False
    assert channel.emit(out("late")) is False
    assert channel.closed

    assert [e.to_dict() for e in await channel.collect()] == [{"type": "error", "data": "boom"}]
    with pytest.raises(RuntimeError):
        await channel.collect()
