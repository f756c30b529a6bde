"""Version control and review collaborators."""

from .git import GitCommandError, GitWorkspace, authenticated_url, public_url
from .github import (
    GitHubAppCredentials,
    GitHubClient,
    GitHubCredentialsError,
    GitHubError,
    PullRequest,
)

__all__ = [
    "GitCommandError",
    "GitHubAppCredentials",
    "GitHubClient",
    "GitHubCredentialsError",
    "GitHubError",
    "GitWorkspace",
    "PullRequest",
    "authenticated_url",
    "public_url",
]
