"""Repository cloning via the git CLI."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import structlog

from conveyor.errors import CloneError
from conveyor.services.build.process import run_command

logger = structlog.get_logger(__name__)


@dataclass
class CloneResult:
    path: Path
    commit_sha: str
    branch: Optional[str]


def clone_url(provider: str, owner: str, repo: str) -> str:
    return f"https://{provider}/{owner}/{repo}.git"


def authenticated_url(url: str, provider: str, token: Optional[str]) -> str:
    """Embed the token as HTTP basic auth. GitHub wants x-access-token, GitLab oauth2."""
    if not token or not url.startswith("https://"):
        return url
    username = "x-access-token" if "github" in provider else "oauth2"
    return f"https://{username}:{quote(token, safe='')}@{url[len('https://'):]}"


class GitCloner:
    """Clones one branch (and optionally checks out one commit) into a directory."""

    def __init__(self, git_binary: str = "git", timeout: float = 600.0):
        self.git_binary = git_binary
        self.timeout = timeout

    async def _git(self, args: list[str], cwd: Optional[Path] = None, token: Optional[str] = None) -> str:
        return await run_command(
            [self.git_binary] + args,
            CloneError,
            cwd=cwd,
            timeout=self.timeout,
            secrets=[token, quote(token, safe="")] if token else (),
        )

    async def clone(
        self,
        url: str,
        dest: Path,
        branch: Optional[str] = None,
        commit: Optional[str] = None,
        token: Optional[str] = None,
        provider: str = "github.com",
    ) -> CloneResult:
        """
        Clone ``url`` into ``dest`` and return the checked-out HEAD.

        A shallow clone is used unless a specific commit is requested.

        Raises:
            CloneError: If clone or checkout fails
        """
        args = ["clone", "--single-branch"]
        if branch:
            args += ["--branch", branch]
        if not commit:
            args += ["--depth", "1"]
        args += [authenticated_url(url, provider, token), str(dest)]

        logger.info("git_clone_started", url=url, branch=branch, commit=commit)
        await self._git(args, token=token)

        if commit:
            await self._git(["checkout", "--detach", commit], cwd=dest)

        sha = (await self._git(["rev-parse", "HEAD"], cwd=dest)).strip()
        logger.info("git_clone_finished", url=url, commit_sha=sha)
        return CloneResult(path=dest, commit_sha=sha, branch=branch)
