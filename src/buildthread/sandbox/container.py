"""HTTP client for the container sandbox worker."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from .base import (
    DEFAULT_CWD,
    ChunkCallback,
    ExecResult,
    ExecutionBackend,
    SandboxHandle,
    SandboxRequestError,
    SandboxStreamError,
    SandboxUnavailableError,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0


class ContainerSandboxBackend(ExecutionBackend):
    """Drive sandboxes exposed by the worker under ``/sandbox/{id}/...``.

    The worker creates the container lazily on the first request addressed to
    a sandbox id, so provisioning only derives the id.
    """

    name = "container"

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise SandboxUnavailableError("CLOUDFLARE_SANDBOX_URL is not configured")
        if not token:
            raise SandboxUnavailableError("SANDBOX_AUTH_TOKEN is not configured")
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        handle: SandboxHandle,
        path: str = "",
        *,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"/sandbox/{handle.id}{path}"
        try:
            response = await self._client.request(method, url, json=payload)
        except httpx.HTTPError as exc:
            raise SandboxRequestError(f"Sandbox request {method} {url} failed: {exc}") from exc
        if response.is_error:
            raise SandboxRequestError(
                f"Sandbox API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def provision(self, session_id: str, owner_id: str) -> SandboxHandle:
        sandbox_id = f"build-{session_id}-{owner_id}"
        logger.debug("Reserved container sandbox", extra={"sandbox_id": sandbox_id})
        return SandboxHandle(id=sandbox_id, backend=self.name)

    async def exec(self, handle: SandboxHandle, command: str, cwd: str | None = None) -> ExecResult:
        data = await self._request(
            "POST", handle, "/exec", payload={"command": command, "cwd": cwd or DEFAULT_CWD}
        )
        stdout = data.get("stdout") or ""
        stderr = data.get("stderr") or ""
        output = stdout + ("\n" + stderr if stderr else "")
        return ExecResult(output=output, exit_code=int(data.get("exitCode", 1)))

    async def exec_streaming(
        self,
        handle: SandboxHandle,
        session_name: str,
        command: str,
        on_chunk: ChunkCallback,
        cwd: str | None = None,
    ) -> int:
        exit_code = 1
        url = f"/sandbox/{handle.id}/exec/stream"
        payload = {"command": command, "cwd": cwd or DEFAULT_CWD, "sessionId": session_name}
        try:
            async with self._client.stream(
                "POST",
                url,
                json=payload,
                timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise SandboxStreamError(
                        f"Failed to start streaming execution: {response.status_code} - {response.text}"
                    )
                async for event in parse_sse_stream(response.aiter_text()):
                    event_type = event.get("type")
                    if event_type in {"stdout", "stderr"}:
                        on_chunk(str(event.get("data", "")))
                    elif event_type == "exit":
                        exit_code = int(event.get("exitCode", 1))
                    elif event_type == "error":
                        # exit code stays non-zero; the turn still commits what changed
                        logger.warning(
                            "Sandbox reported stream error",
                            extra={"sandbox_id": handle.id, "error": event.get("error")},
                        )
                        on_chunk(f"\n[sandbox] error: {event.get('error', 'unknown')}\n")
        except httpx.HTTPError as exc:
            raise SandboxStreamError(f"Streaming execution failed: {exc}") from exc
        return exit_code

    async def make_dir(self, handle: SandboxHandle, path: str) -> None:
        await self._request("POST", handle, "/mkdir", payload={"path": path, "recursive": True})

    async def write_file(self, handle: SandboxHandle, path: str, content: str) -> None:
        await self._request("POST", handle, "/file/write", payload={"path": path, "content": content})

    async def create_session(self, handle: SandboxHandle, name: str, cwd: str) -> None:
        await self._request("POST", handle, "/session", payload={"sessionId": name, "cwd": cwd})

    async def delete_session(self, handle: SandboxHandle, name: str) -> None:
        await self._request("DELETE", handle, f"/session/{name}")

    async def destroy(self, handle: SandboxHandle) -> None:
        try:
            await self._request("DELETE", handle)
        except SandboxRequestError as exc:
            if exc.status_code == 404:
                logger.debug("Sandbox already gone", extra={"sandbox_id": handle.id})
                return
            raise


async def parse_sse_stream(chunks: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Parse ``data:`` events separated by blank lines from a text stream.

    Malformed events are skipped.
    """

    buffer = ""
    async for chunk in chunks:
        buffer += chunk
        while "\n\n" in buffer:
            event_str, buffer = buffer.split("\n\n", 1)
            data_lines: list[str] = []
            for line in event_str.split("\n"):
                if line.startswith("data:"):
                    data_content = line[5:].lstrip()
                    if data_content:
                        data_lines.append(data_content)
            if not data_lines:
                continue
            try:
                event = json.loads("\n".join(data_lines))
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed SSE event", extra={"event": event_str[:200]})
                continue
            if isinstance(event, dict):
                yield event


__all__ = ["ContainerSandboxBackend", "parse_sse_stream"]
