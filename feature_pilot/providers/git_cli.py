"""Version control over the ``git`` and ``gh`` command line tools.

Before PR creation the feature branch is checked out, every change is
committed and the branch is pushed. The pull request itself is opened by
the agent; afterwards ``gh pr view`` confirms that it really exists.
"""

import json
from pathlib import Path

import structlog

from feature_pilot.exceptions import ExternalCommandError
from feature_pilot.models.domain import Session
from feature_pilot.providers.base import VersionControl
from feature_pilot.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


class GitCliVersionControl(VersionControl):
    """Run git and gh in the session's project checkout.

    Args:
        remote: Remote the feature branch is pushed to
        timeout_seconds: Limit for each individual command
    """

    def __init__(self, remote: str = "origin", timeout_seconds: float = 120.0) -> None:
        self.remote = remote
        self.timeout_seconds = timeout_seconds

    async def _git(self, cwd: Path, *args: str, check: bool = True) -> tuple[str, int]:
        command = ("git", *args)
        try:
            stdout, stderr, returncode = await run_command(*command, cwd=cwd, check=False, timeout=self.timeout_seconds)
        except FileNotFoundError as e:
            raise ExternalCommandError("git executable not found", command=" ".join(command)) from e
        except TimeoutError as e:
            raise ExternalCommandError("git command timed out", command=" ".join(command)) from e

        if check and returncode != 0:
            raise ExternalCommandError(
                f"git {args[0]} failed",
                command=" ".join(command),
                returncode=returncode,
                stderr=stderr,
            )
        return stdout, returncode

    async def prepare_pull_request(self, session: Session) -> None:
        """Commit outstanding work on the feature branch and push it.

        Raises:
            ExternalCommandError: If a git command fails
        """
        cwd = Path(session.project_path)
        branch = session.feature_branch or f"feature/{session.feature_id}"

        current, _ = await self._git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
        if current.strip() != branch:
            _, exists = await self._git(cwd, "rev-parse", "--verify", "--quiet", branch, check=False)
            if exists == 0:
                await self._git(cwd, "checkout", branch)
            else:
                await self._git(cwd, "checkout", "-b", branch)

        await self._git(cwd, "add", "-A")
        status, _ = await self._git(cwd, "status", "--porcelain")
        if status.strip():
            await self._git(cwd, "commit", "-m", f"feat: {session.title}")
        else:
            log.info("no_changes_to_commit", feature_id=session.feature_id)

        await self._git(cwd, "push", "-u", self.remote, branch)
        log.info("feature_branch_pushed", feature_id=session.feature_id, branch=branch)

    async def find_pull_request(self, session: Session) -> str | None:
        branch = session.feature_branch or f"feature/{session.feature_id}"
        try:
            stdout, stderr, returncode = await run_command(
                "gh",
                "pr",
                "view",
                branch,
                "--json",
                "url,state",
                cwd=session.project_path,
                check=False,
                timeout=self.timeout_seconds,
            )
        except (FileNotFoundError, TimeoutError) as e:
            log.warning("pull_request_lookup_failed", feature_id=session.feature_id, error=str(e))
            return None

        if returncode != 0:
            log.info("pull_request_not_found", feature_id=session.feature_id, stderr=stderr.strip()[:200])
            return None

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            log.warning("pull_request_lookup_unparseable", feature_id=session.feature_id)
            return None

        if not isinstance(data, dict) or data.get("state", "OPEN") != "OPEN":
            return None
        return data.get("url") or None
