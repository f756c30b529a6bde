"""Build session lifecycle: bootstrap, turns and teardown."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..agent import AgentController
from ..chat import Conversation, TypingIndicator
from ..config import BuildSettings
from ..sandbox import ExecutionBackend, SandboxHandle
from ..vcs import GitHubClient, GitWorkspace
from .models import (
    BuildSession,
    Requester,
    SessionStatus,
    branch_for,
    new_session_id,
)
from .progress import ProgressTracker, bootstrap_steps, fence, render_ready
from .relay import OutputRelay
from .store import SessionStore

if TYPE_CHECKING:
    from ..storage import ChromaStore

logger = logging.getLogger(__name__)

ThreadOpener = Callable[[Any, str], Awaitable[Conversation]]

INITIAL_COMMIT_MESSAGE = "chore: initialize build session"


class BuildSessionManager:
    """Drive one sandbox, one branch and one pull request per chat thread.

    No public coroutine lets an exception escape: bootstrap failures return
    ``None``, turn failures are reported in the thread, and teardown failures
    are reported as cleanup errors.

    Turns and the done keyword share a per-session lock, so a user-requested
    end waits for the in-flight turn to commit. The stale sweep does not take
    that lock and may tear a session down mid-turn.
    """

    def __init__(
        self,
        settings: BuildSettings,
        *,
        backend: ExecutionBackend,
        workspace: GitWorkspace,
        review: GitHubClient,
        agent: AgentController,
        open_thread: ThreadOpener,
        store: SessionStore | None = None,
        journal: "ChromaStore | None" = None,
        clock: Callable[[], datetime] | None = None,
        relay_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._workspace = workspace
        self._review = review
        self._agent = agent
        self._open_thread = open_thread
        self._store = store or SessionStore()
        self._journal = journal
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._relay_clock = relay_clock
        self._turn_locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    def get_session_by_thread(self, thread_id: int) -> BuildSession | None:
        return self._store.get_by_thread(thread_id)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def start(self, origin: Any, description: str, requester: Requester) -> BuildSession | None:
        """Bootstrap a session from ``origin`` and run ``description`` as the first turn."""

        description = description.strip()
        if not description:
            return None

        session_id = new_session_id()
        branch = branch_for(session_id)
        try:
            thread = await self._open_thread(origin, f"Build: {description[:50]}")
        except Exception:
            logger.exception("Unable to open build thread", extra={"session_id": session_id})
            return None

        tracker = ProgressTracker(thread, bootstrap_steps(branch, self._agent.title), description)
        try:
            await tracker.post()
        except Exception as exc:  # noqa: BLE001 - progress message is cosmetic
            logger.debug(
                "Progress message could not be posted",
                extra={"session_id": session_id, "error": str(exc)},
            )

        logger.info(
            "Starting build session",
            extra={"session_id": session_id, "thread_id": thread.id, "requester": requester.name},
        )

        handle: SandboxHandle | None = None
        agent_started = False
        try:
            async with tracker.step():
                handle = await self._backend.provision(session_id, requester.id)

            async with tracker.step():
                await self._workspace.clone(handle)
                await self._workspace.protect(handle, self._settings.protected_paths)

            async with tracker.step():
                await self._workspace.create_branch(handle, branch)

            async with tracker.step():
                await self._workspace.commit_all(
                    handle, INITIAL_COMMIT_MESSAGE, requester.name, allow_empty=True
                )

            async with tracker.step():
                pr = await self._review.open_draft_pr(
                    branch,
                    self._settings.default_branch,
                    f"Build: {description[:60]}",
                    f"Automated build session started by {requester.mention}\n\n"
                    f"**Description:**\n{description}",
                )

            async with tracker.step():
                await self._agent.install(handle)

            async with tracker.step():
                await self._agent.configure(handle)
                agent_started = True
                await self._agent.create_session(handle)

            session = BuildSession(
                id=session_id,
                thread_id=thread.id,
                requester_id=requester.id,
                requester_name=requester.name,
                sandbox=handle,
                branch=branch,
                pr_number=pr.number,
                pr_url=pr.url,
                repo_path=self._workspace.repo_path,
                description=description,
                created_at=self._clock(),
            )
            self._store.put(session)
        except Exception as exc:
            failed = await tracker.fail_active()
            logger.error(
                "Build bootstrap failed",
                extra={
                    "session_id": session_id,
                    "thread_id": thread.id,
                    "step": failed.label if failed else None,
                },
                exc_info=True,
            )
            await self._notify(thread, fence(str(exc)))
            if self._settings.rollback_on_bootstrap_failure and handle is not None:
                await self._rollback(handle, agent_started)
            return None

        self._journal_session(session, "session_started")
        await tracker.replace(
            render_ready(session.pr_url, self._settings.done_keyword, self._agent.title)
        )
        logger.info(
            "Build session ready",
            extra={"session_id": session.id, "branch": branch, "pr_url": session.pr_url},
        )

        await self.handle_turn(thread, description, session)
        return session

    async def _rollback(self, handle: SandboxHandle, agent_started: bool) -> None:
        if agent_started:
            try:
                await self._agent.cleanup(handle)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Rollback could not clean up the agent session",
                    extra={"sandbox_id": handle.id, "error": str(exc)},
                )
        try:
            await self._backend.destroy(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Rollback could not destroy the sandbox",
                extra={"sandbox_id": handle.id, "error": str(exc)},
            )
        else:
            logger.info("Rolled back partial bootstrap", extra={"sandbox_id": handle.id})

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_turn(
        self,
        thread: Conversation,
        instruction: str,
        session: BuildSession | None = None,
    ) -> None:
        """Forward one instruction to the agent, or end the session on the done keyword.

        Turns for unknown or finished sessions are dropped silently.
        """

        session = session or self._store.get_by_thread(thread.id)
        if session is None or not session.is_active:
            return
        text = instruction.strip()
        if not text:
            return

        lock = self._turn_locks.setdefault(session.id, asyncio.Lock())
        async with lock:
            if not session.is_active:
                return
            if text.lower() == self._settings.done_keyword:
                await self.end(session.id, mark_ready=True, channel=thread)
                return

            async with TypingIndicator(thread):
                try:
                    await self._run_turn(thread, session, text)
                except Exception as exc:
                    logger.exception(
                        "Build turn failed",
                        extra={"session_id": session.id, "thread_id": thread.id},
                    )
                    await self._notify(thread, f"Error: {exc}")

    async def _run_turn(self, thread: Conversation, session: BuildSession, text: str) -> None:
        relay = OutputRelay(
            thread,
            interval=self._settings.flush_interval,
            tail_chars=self._settings.output_tail_chars,
            clock=self._relay_clock,
        )
        try:
            exit_code = await self._agent.send_prompt(session.sandbox, text, relay.feed)
        finally:
            await relay.close()

        sha = await self._workspace.commit_all(
            session.sandbox, f"{self._agent.title}: {text[:50]}", session.requester_name
        )
        if sha:
            await self._notify(thread, f"Committed: `{sha[:7]}`")
        if exit_code != 0:
            await self._notify(thread, f"{self._agent.title} exited with code {exit_code}")
        logger.info(
            "Build turn finished",
            extra={"session_id": session.id, "exit_code": exit_code, "sha": sha},
        )
        await self._notify(
            thread,
            f"Ready for next instruction. Say `{self._settings.done_keyword}` when finished.",
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def end(
        self,
        session_id: str,
        mark_ready: bool,
        channel: Conversation | None = None,
    ) -> None:
        session = self._store.get_by_id(session_id)
        if session is None or not session.is_active:
            return

        session.mark(SessionStatus.COMPLETED)
        logger.info(
            "Ending build session",
            extra={"session_id": session.id, "mark_ready": mark_ready},
        )
        failures: list[Exception] = []
        try:
            if mark_ready:
                try:
                    await self._review.mark_ready(session.pr_number)
                except Exception as exc:  # noqa: BLE001
                    failures.append(exc)
                else:
                    await self._notify(channel, f"PR marked ready for review: {session.pr_url}")

            try:
                await self._agent.cleanup(session.sandbox)
            except Exception as exc:  # noqa: BLE001
                failures.append(exc)
            try:
                await self._backend.destroy(session.sandbox)
            except Exception as exc:  # noqa: BLE001
                failures.append(exc)

            for exc in failures:
                logger.warning(
                    "Build teardown step failed",
                    extra={"session_id": session.id, "error": str(exc)},
                )
                await self._notify(channel, f"Cleanup error: {exc}")
            if not failures:
                await self._notify(channel, "Build environment cleaned up.")
        finally:
            self._store.delete(session.id)
            self._turn_locks.pop(session.id, None)
            self._journal_session(session, "session_ended")

    async def sweep_stale(self) -> list[str]:
        """End every active session older than the configured maximum age."""

        now = self._clock()
        ended: list[str] = []
        for session in self._store.active_sessions():
            if session.age(now) <= self._settings.max_session_age:
                continue
            try:
                await self.end(session.id, mark_ready=False)
            except Exception:
                logger.exception("Stale session teardown failed", extra={"session_id": session.id})
                continue
            ended.append(session.id)
        if ended:
            logger.info("Swept stale build sessions", extra={"session_ids": ended})
        return ended

    async def reap_orphans(self) -> list[str]:
        """Destroy sandboxes of journaled sessions this process no longer tracks."""

        if self._journal is None:
            return []
        try:
            orphans = self._journal.open_sessions()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unable to read session journal", extra={"error": str(exc)})
            return []

        reaped: list[str] = []
        for record in orphans:
            if record.session_id in self._store:
                continue
            handle = SandboxHandle(id=record.sandbox_id, backend=record.backend)
            try:
                await self._backend.destroy(handle)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Unable to destroy orphaned sandbox",
                    extra={"session_id": record.session_id, "sandbox_id": handle.id, "error": str(exc)},
                )
                continue
            self._journal_record(
                record.session_id,
                "session_reaped",
                thread_id=record.thread_id,
                sandbox=handle,
                branch=record.branch,
                pr_number=record.pr_number,
                pr_url=record.pr_url,
                status=SessionStatus.COMPLETED.value,
            )
            reaped.append(record.session_id)
        if reaped:
            logger.info("Reaped orphaned build sessions", extra={"session_ids": reaped})
        return reaped

    def status_snapshot(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            {
                "session_id": session.id,
                "thread_id": session.thread_id,
                "requester": session.requester_name,
                "branch": session.branch,
                "pr_url": session.pr_url,
                "status": session.status.value,
                "age_seconds": int(session.age(now)),
            }
            for session in self._store.all_sessions()
        ]

    async def shutdown(self) -> None:
        await self._backend.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _notify(self, conversation: Conversation | None, text: str) -> None:
        if conversation is None:
            return
        try:
            await conversation.send(text)
        except Exception as exc:  # noqa: BLE001 - the chat transport may be gone
            logger.debug(
                "Unable to post to conversation",
                extra={"conversation_id": conversation.id, "error": str(exc)},
            )

    def _journal_session(self, session: BuildSession, event_type: str) -> None:
        self._journal_record(
            session.id,
            event_type,
            thread_id=session.thread_id,
            sandbox=session.sandbox,
            branch=session.branch,
            pr_number=session.pr_number,
            pr_url=session.pr_url,
            status=session.status.value,
            requester=session.requester_name,
        )

    def _journal_record(
        self,
        session_id: str,
        event_type: str,
        *,
        thread_id: int,
        sandbox: SandboxHandle,
        branch: str,
        pr_number: int,
        pr_url: str,
        status: str,
        requester: str | None = None,
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_session(
                session_id=session_id,
                event_type=event_type,
                thread_id=thread_id,
                sandbox_id=sandbox.id,
                backend=sandbox.backend,
                branch=branch,
                pr_number=pr_number,
                pr_url=pr_url,
                status=status,
                metadata={"requester": requester} if requester else None,
            )
        except Exception as exc:  # noqa: BLE001 - the journal never blocks the lifecycle
            logger.warning(
                "Unable to journal session event",
                extra={"session_id": session_id, "event_type": event_type, "error": str(exc)},
            )


__all__ = ["BuildSessionManager", "INITIAL_COMMIT_MESSAGE", "ThreadOpener"]
