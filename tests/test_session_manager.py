from __future__ import annotations

import asyncio
import itertools
import math
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from buildthread.config import BuildSettings
from buildthread.sandbox import SandboxHandle, SandboxRequestError
from buildthread.session import BuildSessionManager, Requester, SessionStatus, SessionStore
from buildthread.vcs import GitCommandError, PullRequest

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
PR_URL = "https://github.com/acme/widgets/pull/7"
ALICE = Requester(id="42", name="alice")


class StubThread:
    def __init__(self, thread_id: int) -> None:
        self.id = thread_id
        self.contents: list[str] = []
        self.sent: list[str] = []
        self.edit_count = 0
        self.pulses = 0

    async def send(self, text: str) -> int:
        self.sent.append(text)
        self.contents.append(text)
        return len(self.contents) - 1

    async def edit(self, message: int, text: str) -> None:
        self.edit_count += 1
        self.contents[message] = text

    async def typing(self) -> None:
        self.pulses += 1


class StubBackend:
    def __init__(self, *, fail_destroy: bool = False) -> None:
        self.provisioned: list[str] = []
        self.destroyed: list[str] = []
        self.fail_destroy = fail_destroy
        self.closed = False

    async def provision(self, session_id: str, owner_id: str) -> SandboxHandle:
        handle = SandboxHandle(f"sb-{session_id}", "stub")
        self.provisioned.append(handle.id)
        return handle

    async def destroy(self, handle: SandboxHandle) -> None:
        self.destroyed.append(handle.id)
        if self.fail_destroy:
            raise SandboxRequestError("sandbox API unreachable", status_code=502)

    async def aclose(self) -> None:
        self.closed = True


class StubWorkspace:
    repo_path = "/workspace/repo"

    def __init__(self, *, fail_clone: bool = False, shas: list[str | None] | None = None) -> None:
        self.fail_clone = fail_clone
        self.shas = list(shas if shas is not None else ["abcdef1234"])
        self.calls: list[str] = []
        self.commits: list[tuple[str, str, bool]] = []

    async def clone(self, handle) -> None:
        self.calls.append("clone")
        if self.fail_clone:
            raise GitCommandError("git clone", 128, "clone exploded")

    async def protect(self, handle, paths) -> None:
        self.calls.append(f"protect:{','.join(paths)}")

    async def create_branch(self, handle, name: str) -> None:
        self.calls.append(f"branch:{name}")

    async def commit_all(self, handle, message: str, author_name: str, *, allow_empty: bool = False):
        self.commits.append((message, author_name, allow_empty))
        if allow_empty:
            return "init000"
        return self.shas.pop(0) if self.shas else None


class StubReview:
    def __init__(self, *, fail_ready: bool = False) -> None:
        self.opened: list[tuple[str, str, str, str]] = []
        self.marked: list[int] = []
        self.fail_ready = fail_ready

    async def open_draft_pr(self, branch: str, base: str, title: str, body: str) -> PullRequest:
        self.opened.append((branch, base, title, body))
        return PullRequest(number=7, url=PR_URL)

    async def mark_ready(self, number: int) -> None:
        if self.fail_ready:
            raise RuntimeError("GraphQL said no")
        self.marked.append(number)


class StubAgent:
    title = "OpenCode"

    def __init__(self, *, exit_code: int = 0, chunks: list[str] | None = None, delay: float = 0.0) -> None:
        self.exit_code = exit_code
        self.chunks = chunks if chunks is not None else ["building...\n"]
        self.delay = delay
        self.prompts: list[str] = []
        self.cleaned: list[str] = []
        self.calls: list[str] = []
        self.running = 0
        self.max_running = 0
        self.error: Exception | None = None

    async def install(self, handle) -> None:
        self.calls.append("install")

    async def configure(self, handle) -> None:
        self.calls.append("configure")

    async def create_session(self, handle) -> None:
        self.calls.append("session")

    async def send_prompt(self, handle, prompt: str, on_chunk) -> int:
        self.prompts.append(prompt)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.error is not None:
                raise self.error
            for chunk in self.chunks:
                on_chunk(chunk)
                await asyncio.sleep(0)
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.exit_code
        finally:
            self.running -= 1

    async def cleanup(self, handle) -> None:
        self.cleaned.append(handle.id)


class StubJournal:
    def __init__(self, open_records=None) -> None:
        self.events: list[tuple[str, str]] = []
        self.open_records = open_records or []

    def record_session(self, *, session_id, event_type, **kwargs):
        self.events.append((session_id, event_type))

    def open_sessions(self):
        return list(self.open_records)


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_manager(
    *,
    backend: StubBackend | None = None,
    workspace: StubWorkspace | None = None,
    review: StubReview | None = None,
    agent: StubAgent | None = None,
    journal: StubJournal | None = None,
    clock: Clock | None = None,
    relay_clock=None,
    **settings_overrides,
):
    threads: list[StubThread] = []
    thread_ids = itertools.count(1000)

    async def open_thread(origin, title: str) -> StubThread:
        thread = StubThread(next(thread_ids))
        thread.title = title  # type: ignore[attr-defined]
        threads.append(thread)
        return thread

    parts = SimpleNamespace(
        backend=backend or StubBackend(),
        workspace=workspace or StubWorkspace(),
        review=review or StubReview(),
        agent=agent or StubAgent(),
        journal=journal,
        threads=threads,
    )
    settings = BuildSettings(_env_file=None, **settings_overrides)
    extra = {"relay_clock": relay_clock} if relay_clock is not None else {}
    manager = BuildSessionManager(
        settings,
        backend=parts.backend,
        workspace=parts.workspace,
        review=parts.review,
        agent=parts.agent,
        open_thread=open_thread,
        store=SessionStore(),
        journal=journal,
        clock=clock or Clock(),
        **extra,
    )
    return manager, parts


def assert_indexes_consistent(manager: BuildSessionManager) -> None:
    store = manager.store
    assert store.thread_ids() == {session.thread_id for session in store.all_sessions()}
    for session in store.all_sessions():
        assert store.get_by_thread(session.thread_id) is session


def test_happy_path_bootstrap_turn_and_done() -> None:
    manager, parts = make_manager(journal=StubJournal())

    async def scenario():
        session = await manager.start(object(), "add a healthcheck endpoint", ALICE)
        thread = parts.threads[0]
        sent_before_done = list(thread.sent)
        await manager.handle_turn(thread, "  Done ")
        after_done = len(thread.sent)
        await manager.handle_turn(thread, "one more thing")
        return session, thread, sent_before_done, after_done

    session, thread, sent_before_done, after_done = asyncio.run(scenario())

    assert session is not None
    assert thread.title == "Build: add a healthcheck endpoint"
    assert session.branch == f"build/{session.id}"
    assert parts.workspace.calls == ["clone", "protect:sandbox", f"branch:{session.branch}"]
    assert parts.agent.calls == ["install", "configure", "session"]
    assert parts.review.opened[0][:3] == (session.branch, "main", "Build: add a healthcheck endpoint")
    assert "<@42>" in parts.review.opened[0][3]

    progress = thread.contents[0]
    assert thread.sent[0].startswith("**Building:** add a healthcheck endpoint")
    assert progress.startswith("✓ **Ready!**")
    assert PR_URL in progress
    assert thread.edit_count >= 14

    assert parts.agent.prompts == ["add a healthcheck endpoint"]
    assert any(message.startswith("```\n") and "building..." in message for message in sent_before_done)
    assert "Committed: `abcdef1`" in sent_before_done
    assert sent_before_done[-1] == "Ready for next instruction. Say `done` when finished."
    assert parts.workspace.commits[-1] == ("OpenCode: add a healthcheck endpoint", "alice", False)

    assert parts.review.marked == [7]
    assert f"PR marked ready for review: {PR_URL}" in thread.sent
    assert thread.sent[after_done - 1] == "Build environment cleaned up."
    assert len(thread.sent) == after_done
    assert parts.agent.prompts == ["add a healthcheck endpoint"]
    assert session.status is SessionStatus.COMPLETED
    assert len(manager.store) == 0
    assert parts.backend.destroyed == [session.sandbox.id]
    assert parts.journal.events == [(session.id, "session_started"), (session.id, "session_ended")]


def test_clone_failure_aborts_bootstrap_and_rolls_back() -> None:
    manager, parts = make_manager(workspace=StubWorkspace(fail_clone=True))

    async def scenario():
        result = await manager.start(object(), "add a healthcheck endpoint", ALICE)
        thread = parts.threads[0]
        await manager.handle_turn(thread, "are you there?")
        return result, thread

    result, thread = asyncio.run(scenario())

    assert result is None
    assert "✗ Cloning repository" in thread.contents[0]
    assert "✓ Creating sandbox" in thread.contents[0]
    assert any(message.startswith("```\n") and "clone exploded" in message for message in thread.sent)
    assert manager.get_session_by_thread(thread.id) is None
    assert len(manager.store) == 0
    assert parts.agent.prompts == []
    assert parts.backend.destroyed == parts.backend.provisioned
    assert parts.review.opened == []


def test_rollback_can_be_disabled() -> None:
    manager, parts = make_manager(
        workspace=StubWorkspace(fail_clone=True), rollback_on_bootstrap_failure=False
    )

    assert asyncio.run(manager.start(object(), "anything", ALICE)) is None
    assert parts.backend.destroyed == []


def test_blank_description_is_rejected_without_side_effects() -> None:
    manager, parts = make_manager()

    assert asyncio.run(manager.start(object(), "   ", ALICE)) is None
    assert parts.threads == []
    assert parts.backend.provisioned == []


def test_done_keyword_never_reaches_agent() -> None:
    manager, parts = make_manager()

    async def scenario():
        session = await manager.start(object(), "first", ALICE)
        thread = parts.threads[0]
        await manager.handle_turn(thread, "DONE")
        return session

    session = asyncio.run(scenario())

    assert parts.agent.prompts == ["first"]
    assert session.status is SessionStatus.COMPLETED


def test_turn_failure_reports_error_and_keeps_session_active() -> None:
    agent = StubAgent()
    manager, parts = make_manager(agent=agent)

    async def scenario():
        session = await manager.start(object(), "first", ALICE)
        agent.error = RuntimeError("agent crashed")
        thread = parts.threads[0]
        await manager.handle_turn(thread, "second")
        return session, thread

    session, thread = asyncio.run(scenario())

    assert thread.sent[-1] == "Error: agent crashed"
    assert session.is_active
    assert manager.get_session_by_thread(thread.id) is session


def test_nonzero_exit_is_informational_and_clean_tree_posts_no_commit() -> None:
    manager, parts = make_manager(agent=StubAgent(exit_code=2), workspace=StubWorkspace(shas=[None]))

    session = asyncio.run(manager.start(object(), "first", ALICE))
    thread = parts.threads[0]

    assert session.is_active
    assert "OpenCode exited with code 2" in thread.sent
    assert not any(message.startswith("Committed:") for message in thread.sent)


def test_streamed_output_respects_throttle() -> None:
    ticks = itertools.count()
    agent = StubAgent(chunks=[f"line {index}\n" for index in range(40)])
    manager, parts = make_manager(agent=agent, relay_clock=lambda: next(ticks) * 0.1)

    session = asyncio.run(manager.start(object(), "first", ALICE))
    thread = parts.threads[0]

    output_messages = [index for index, text in enumerate(thread.contents) if text.startswith("```\n")]
    assert session is not None
    assert len(output_messages) == 1
    assert "line 39" in thread.contents[output_messages[0]]
    progress_edits = 15
    output_writes = thread.edit_count - progress_edits + 1
    assert output_writes <= math.ceil(40 * 0.1 / 0.5) + 1


def test_end_is_idempotent() -> None:
    manager, parts = make_manager()

    async def scenario():
        session = await manager.start(object(), "first", ALICE)
        thread = parts.threads[0]
        await manager.end(session.id, mark_ready=True, channel=thread)
        sent = len(thread.sent)
        await manager.end(session.id, mark_ready=True, channel=thread)
        return session, thread, sent

    session, thread, sent = asyncio.run(scenario())

    assert len(thread.sent) == sent
    assert parts.agent.cleaned == [session.sandbox.id]
    assert parts.review.marked == [7]


def test_cleanup_failures_are_reported_and_session_is_removed() -> None:
    manager, parts = make_manager(
        backend=StubBackend(fail_destroy=True), review=StubReview(fail_ready=True)
    )

    async def scenario():
        session = await manager.start(object(), "first", ALICE)
        thread = parts.threads[0]
        await manager.end(session.id, mark_ready=True, channel=thread)
        return session, thread

    session, thread = asyncio.run(scenario())

    cleanup_errors = [message for message in thread.sent if message.startswith("Cleanup error:")]
    assert len(cleanup_errors) == 2
    assert "Build environment cleaned up." not in thread.sent
    assert parts.agent.cleaned == [session.sandbox.id]
    assert parts.backend.destroyed == [session.sandbox.id]
    assert len(manager.store) == 0
    assert_indexes_consistent(manager)


def test_sweep_stale_ends_only_old_sessions() -> None:
    clock = Clock()
    manager, parts = make_manager(clock=clock, max_session_age=3600)

    async def scenario():
        old = await manager.start(object(), "old work", ALICE)
        clock.now = T0 + timedelta(minutes=50)
        young = await manager.start(object(), "new work", ALICE)
        clock.now = T0 + timedelta(minutes=61)
        ended = await manager.sweep_stale()
        return old, young, ended

    old, young, ended = asyncio.run(scenario())

    assert ended == [old.id]
    assert manager.store.get_by_id(old.id) is None
    assert manager.get_session_by_thread(old.thread_id) is None
    assert manager.store.get_by_id(young.id) is young
    assert young.is_active
    assert parts.review.marked == []
    assert_indexes_consistent(manager)


def test_turns_for_one_session_are_serialized() -> None:
    agent = StubAgent(delay=0.01)
    manager, parts = make_manager(agent=agent)

    async def scenario():
        await manager.start(object(), "first", ALICE)
        thread = parts.threads[0]
        await asyncio.gather(
            manager.handle_turn(thread, "second"),
            manager.handle_turn(thread, "third"),
        )

    asyncio.run(scenario())

    assert agent.prompts == ["first", "second", "third"]
    assert agent.max_running == 1


def test_reap_orphans_destroys_untracked_sandboxes() -> None:
    orphan = SimpleNamespace(
        session_id="build-1",
        thread_id=55,
        sandbox_id="sb-build-1",
        backend="stub",
        branch="build/build-1",
        pr_number=3,
        pr_url="https://github.com/acme/widgets/pull/3",
    )
    journal = StubJournal(open_records=[orphan])
    manager, parts = make_manager(journal=journal)

    reaped = asyncio.run(manager.reap_orphans())

    assert reaped == ["build-1"]
    assert parts.backend.destroyed == ["sb-build-1"]
    assert journal.events == [("build-1", "session_reaped")]


def test_status_snapshot_reports_live_sessions() -> None:
    clock = Clock()
    manager, parts = make_manager(clock=clock)

    session = asyncio.run(manager.start(object(), "first", ALICE))
    clock.now = T0 + timedelta(seconds=90)
    snapshot = manager.status_snapshot()

    assert snapshot == [
        {
            "session_id": session.id,
            "thread_id": session.thread_id,
            "requester": "alice",
            "branch": session.branch,
            "pr_url": PR_URL,
            "status": "active",
            "age_seconds": 90,
        }
    ]
