"""GitHub App authentication and pull request operations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import jwt

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"

MARK_READY_MUTATION = """
mutation($id: ID!) {
  markPullRequestReadyForReview(input: {pullRequestId: $id}) {
    pullRequest { number isDraft }
  }
}
"""


class GitHubError(RuntimeError):
    """Raised when the GitHub API rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubCredentialsError(GitHubError):
    """Raised when GitHub App credentials are missing or unusable."""


@dataclass(slots=True, frozen=True)
class PullRequest:
    number: int
    url: str


class GitHubAppCredentials:
    """Mint and cache installation tokens for a GitHub App."""

    def __init__(
        self,
        app_id: str | None,
        private_key: str | None,
        installation_id: str | None,
        *,
        api_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._app_id = app_id
        self._private_key = private_key
        self._installation_id = installation_id
        self._api_url = api_url.rstrip("/")
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cached: tuple[str, datetime] | None = None

    def _app_jwt(self) -> str:
        if not self._app_id or not self._private_key or not self._installation_id:
            raise GitHubCredentialsError(
                "Missing GitHub App credentials "
                "(GITHUB_APP_ID, GITHUB_APP_PRIVATE_KEY, GITHUB_APP_INSTALLATION_ID)"
            )
        issued = int(time.time()) - 60
        payload = {"iat": issued, "exp": issued + 9 * 60, "iss": self._app_id}
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except (ValueError, jwt.PyJWTError) as exc:
            raise GitHubCredentialsError(f"Unable to sign GitHub App JWT: {exc}") from exc

    async def installation_token(self) -> str:
        """Return a cached token, refreshing it shortly before expiry."""

        now = self._clock()
        if self._cached is not None:
            token, expires_at = self._cached
            if expires_at > now + TOKEN_REFRESH_MARGIN:
                return token

        app_jwt = self._app_jwt()
        url = f"{self._api_url}/app/installations/{self._installation_id}/access_tokens"
        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            response = await client.post(
                url,
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    "Accept": GITHUB_ACCEPT,
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                },
            )
        if response.is_error:
            raise GitHubCredentialsError(
                f"Installation token request failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        data = response.json()
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        self._cached = (data["token"], expires_at)
        logger.debug("Refreshed GitHub installation token", extra={"expires_at": data["expires_at"]})
        return data["token"]


class GitHubClient:
    """Pull request operations for a single repository."""

    def __init__(
        self,
        credentials: GitHubAppCredentials,
        owner: str,
        repo: str,
        *,
        api_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._owner = owner
        self._repo = repo
        self._api_url = api_url.rstrip("/")
        self._transport = transport

    async def _call(self, method: str, path: str, *, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        token = await self._credentials.installation_token()
        async with httpx.AsyncClient(
            base_url=self._api_url, transport=self._transport, timeout=30.0
        ) as client:
            response = await client.request(
                method,
                path,
                json=payload,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": GITHUB_ACCEPT,
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                },
            )
        if response.is_error:
            raise GitHubError(
                f"GitHub API error on {method} {path}: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    async def open_draft_pr(self, branch: str, base: str, title: str, body: str) -> PullRequest:
        data = await self._call(
            "POST",
            f"/repos/{self._owner}/{self._repo}/pulls",
            payload={
                "title": title,
                "body": body,
                "head": branch,
                "base": base,
                "draft": True,
            },
        )
        pull = PullRequest(number=int(data["number"]), url=data["html_url"])
        logger.info("Opened draft pull request", extra={"number": pull.number, "branch": branch})
        return pull

    async def mark_ready(self, number: int) -> None:
        """Promote a draft pull request to ready-for-review.

        The REST API cannot clear the draft flag, so this resolves the node id
        and uses the GraphQL mutation.
        """

        data = await self._call("GET", f"/repos/{self._owner}/{self._repo}/pulls/{number}")
        if not data.get("draft", False):
            return
        result = await self._call(
            "POST",
            "/graphql",
            payload={"query": MARK_READY_MUTATION, "variables": {"id": data["node_id"]}},
        )
        if result.get("errors"):
            messages = "; ".join(str(error.get("message")) for error in result["errors"])
            raise GitHubError(f"Failed to mark pull request #{number} ready: {messages}")
        logger.info("Marked pull request ready", extra={"number": number})


__all__ = [
    "GitHubAppCredentials",
    "GitHubClient",
    "GitHubCredentialsError",
    "GitHubError",
    "PullRequest",
]
