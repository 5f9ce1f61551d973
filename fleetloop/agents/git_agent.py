"""
Git Agent
=========
Working-tree operations for the fix cycle: detect a change, commit it,
or throw it away.

The fix provider edits files in place; the git agent is the only thing
that turns those edits into a commit (or reverts them).
"""
import subprocess
import logging

from fleetloop.core.config import FIX_COMMIT_PREFIX

logger = logging.getLogger(__name__)


class GitError(Exception):
    pass


class GitAgent:
    """
    Commits and reverts fixes in a local workspace.
    """

    def __init__(self, workspace_path: str, commit_prefix: str = FIX_COMMIT_PREFIX) -> None:
        self.workspace_path = workspace_path
        self.commit_prefix = commit_prefix
        self.commit_count = 0

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.workspace_path,
                check=check,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e
        except OSError as e:
            raise GitError(f"git unavailable: {e}") from e

    def has_changes(self) -> bool:
        """True when tracked or untracked files differ from HEAD."""
        res = self._git("status", "--porcelain")
        return bool(res.stdout.strip())

    def changed_files(self) -> list:
        res = self._git("status", "--porcelain")
        return [line[3:] for line in res.stdout.splitlines() if len(line) > 3]

    def commit_all(self, summary: str) -> str:
        """
        Stage everything and commit. Returns the new HEAD sha.
        """
        self._git("add", "-A")

        # Verify there are actual staged changes before committing
        diff_check = self._git("diff", "--cached", "--quiet", check=False)
        if diff_check.returncode == 0:
            raise GitError("nothing staged to commit")

        first_line = summary.strip().splitlines()[0] if summary.strip() else "automated fix"
        commit_msg = f"{self.commit_prefix} {first_line[:72]}\n\n{summary.strip()}"
        self._git("commit", "-m", commit_msg)
        self.commit_count += 1

        sha = self.get_last_commit_sha()
        logger.info("Committed fix %s: %s", sha[:12], first_line)
        return sha

    def revert_worktree(self) -> None:
        """Discard uncommitted edits (tracked and untracked)."""
        self._git("reset", "--hard", "HEAD")
        self._git("clean", "-fd")
        logger.info("Reverted working tree in %s", self.workspace_path)

    def get_last_commit_sha(self) -> str:
        """Get the SHA of the HEAD commit."""
        try:
            return self._git("rev-parse", "HEAD").stdout.strip()
        except GitError:
            return ""
