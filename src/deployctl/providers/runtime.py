"""Container runtime capability consumed by the lifecycle controller."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol


class ContainerRuntime(Protocol):
    """Narrow interface over the container orchestration tool.

    Implementations raise :class:`deployctl.errors.RuntimeCommandError` (or a
    subclass) carrying the tool's diagnostic text when a command fails.
    """

    def pull(self, version: str) -> None:
        """Fetch the images for *version* from the registry."""

    def load(self, blob: Path) -> None:
        """Load a single image blob from disk."""

    def start(self) -> None:
        """Bring the application up in the background."""

    def stop(self) -> None:
        """Stop and remove the application containers."""

    def run_once(self, command: Sequence[str], *, service: str | None = None) -> str:
        """Run *command* in a throwaway container and return its output."""

    def is_running(self) -> bool:
        """Return True when any application service is running."""

    def logs(
        self,
        *,
        follow: bool = False,
        tail: int | None = None,
        service: str | None = None,
    ) -> str:
        """Return (or stream, when *follow* is set) service logs."""


__all__ = ["ContainerRuntime"]
