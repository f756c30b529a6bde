from __future__ import annotations

import asyncio
import math

from buildthread.session import OutputRelay


class StubThread:
    id = 200

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.edits: list[tuple[int, str]] = []
        self.fail = fail

    async def send(self, text: str) -> int:
        if self.fail:
            raise RuntimeError("Missing Access")
        self.sent.append(text)
        return len(self.sent) - 1

    async def edit(self, message: int, text: str) -> None:
        if self.fail:
            raise RuntimeError("Missing Access")
        self.edits.append((message, text))

    async def typing(self) -> None:
        return None


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_edits_are_bounded_by_flush_interval() -> None:
    thread = StubThread()
    clock = FakeClock()
    chunk_count, step = 50, 0.1

    async def scenario():
        relay = OutputRelay(thread, interval=0.5, tail_chars=1800, clock=clock)
        for index in range(chunk_count):
            clock.now += step
            relay.feed(f"chunk {index}\n")
            await asyncio.sleep(0)
        await relay.close()

    asyncio.run(scenario())

    duration = chunk_count * step
    writes = len(thread.sent) + len(thread.edits)
    assert len(thread.sent) == 1
    assert 2 <= writes <= math.ceil(duration / 0.5) + 1
    assert "chunk 49" in thread.edits[-1][1]


def test_burst_faster_than_interval_yields_single_message() -> None:
    thread = StubThread()
    clock = FakeClock()

    async def scenario():
        relay = OutputRelay(thread, interval=0.5, clock=clock)
        for index in range(500):
            relay.feed(str(index))
        await relay.close()

    asyncio.run(scenario())

    assert len(thread.sent) == 1
    assert thread.edits == []
    assert thread.sent[0].startswith("```\n")


def test_tail_is_bounded() -> None:
    thread = StubThread()

    async def scenario():
        relay = OutputRelay(thread, tail_chars=10, clock=FakeClock())
        relay.feed("x" * 100 + "END")
        await relay.close()
        return relay

    relay = asyncio.run(scenario())

    assert relay.text == "xxxxxxxEND"
    assert thread.sent == ["```\nxxxxxxxEND\n```"]


def test_no_output_sends_nothing() -> None:
    thread = StubThread()

    async def scenario():
        relay = OutputRelay(thread, clock=FakeClock())
        relay.feed("")
        await relay.close()

    asyncio.run(scenario())

    assert thread.sent == [] and thread.edits == []


def test_transport_failures_are_swallowed() -> None:
    thread = StubThread(fail=True)
    clock = FakeClock()

    async def scenario():
        relay = OutputRelay(thread, clock=clock)
        clock.now = 1.0
        relay.feed("first")
        await asyncio.sleep(0)
        relay.feed("second")
        await relay.close()

    asyncio.run(scenario())

    assert thread.sent == []


def test_first_chunk_is_shown_before_a_quiet_stretch() -> None:
    thread = StubThread()
    clock = FakeClock()

    async def scenario():
        relay = OutputRelay(thread, interval=0.5, clock=clock)
        relay.feed("thinking...\n")
        await asyncio.sleep(0)
        shown_early = list(thread.sent)
        clock.now += 120.0
        await relay.close()
        return shown_early

    shown_early = asyncio.run(scenario())

    assert shown_early == ["```\nthinking...\n\n```"]
    assert thread.sent == shown_early
    assert thread.edits == []
