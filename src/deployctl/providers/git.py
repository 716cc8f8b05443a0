"""Git provider backing the release ledger checkout."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import DeployctlError


class GitError(DeployctlError):
    """Raised when a git command fails."""


@dataclass(slots=True)
class GitProvider:
    """Run git commands against the release checkout in *repo_dir*."""

    repo_dir: Path
    git_bin: str = "git"

    def list_tags(self) -> list[str]:
        """Return every tag in the checkout (unsorted)."""
        result = self._run(["tag", "--list"], error_prefix="git tag --list")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def fetch_tags(self, source: str) -> None:
        """Fetch tags from *source* (a remote name, URL or repository path).

        Existing tags are never deleted; a tag that moved upstream is refused
        rather than overwritten.
        """
        self._run(
            ["fetch", "--tags", "--no-prune", source],
            error_prefix=f"git fetch --tags {source}",
        )

    def checkout(self, tag: str) -> None:
        """Switch the checkout to *tag* (detached)."""
        self._run(
            ["checkout", "--quiet", "--detach", f"refs/tags/{tag}"],
            error_prefix=f"git checkout {tag}",
        )

    def current_tag(self) -> str | None:
        """Return the tag pointing at HEAD, if any."""
        try:
            result = self._run(
                ["describe", "--tags", "--exact-match", "HEAD"],
                error_prefix="git describe",
            )
        except GitError:
            return None
        return result.stdout.strip() or None

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str], *, error_prefix: str) -> subprocess.CompletedProcess[str]:
        command = [self.git_bin, "-C", str(self.repo_dir), *args]
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise GitError(f"{self.git_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise GitError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["GitError", "GitProvider"]
