"""Docker compose provider implementing the container runtime capability."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import RuntimeCommandError


class ComposeError(RuntimeCommandError):
    """Raised when docker or docker compose commands fail."""


@dataclass(slots=True)
class ComposeRuntime:
    """Drive the application stack through ``docker compose``."""

    compose_file: Path
    env_file: Path
    project_name: str = "deployctl"
    docker_bin: str = "docker"
    utility_service: str = "utility"

    def pull(self, version: str) -> None:
        """Pull all service images for *version*."""
        self._compose(["pull", "--quiet"], extra_env={"VERSION": version})

    def load(self, blob: Path) -> None:
        """Load the image archive *blob* into the local image store."""
        self._run_command(
            [self.docker_bin, "load", "--input", str(blob)],
            error_prefix=f"{self.docker_bin} load {blob.name}",
        )

    def start(self) -> None:
        """Start the stack detached."""
        self._compose(["up", "--detach", "--remove-orphans"])

    def stop(self) -> None:
        """Stop and remove the stack containers."""
        self._compose(["down"])

    def run_once(self, command: Sequence[str], *, service: str | None = None) -> str:
        """Run *command* in a one-off container of *service*."""
        target = service or self.utility_service
        result = self._compose(["run", "--rm", "--no-deps", target, *command])
        return result.stdout

    def is_running(self) -> bool:
        """Return True when ``docker compose ps`` lists running containers."""
        result = self._compose(["ps", "--status", "running", "--quiet"])
        return bool(result.stdout.strip())

    def logs(
        self,
        *,
        follow: bool = False,
        tail: int | None = None,
        service: str | None = None,
    ) -> str:
        """Return service logs; with *follow* the output streams to the terminal."""
        args: list[str] = ["logs", "--no-color"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if follow:
            args.append("--follow")
        if service:
            args.append(service)
        result = self._compose(args, capture_output=not follow)
        return result.stdout or ""

    # ------------------------------------------------------------------
    def base_command(self) -> list[str]:
        """Return the ``docker compose`` prefix bound to this project."""
        return [
            self.docker_bin,
            "compose",
            "--project-name",
            self.project_name,
            "--file",
            str(self.compose_file),
            "--env-file",
            str(self.env_file),
        ]

    def _compose(
        self,
        args: Sequence[str],
        *,
        extra_env: Mapping[str, str] | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        joined = " ".join(args[:1])
        return self._run_command(
            [*self.base_command(), *args],
            error_prefix=f"{self.docker_bin} compose {joined}".rstrip(),
            extra_env=extra_env,
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        extra_env: Mapping[str, str] | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        env = None
        if extra_env:
            env = {**os.environ, **extra_env}
        try:
            if capture_output:
                result = subprocess.run(  # noqa: S603, S607
                    list(args),
                    capture_output=True,
                    text=True,
                    check=False,
                    env=env,
                )
            else:
                result = subprocess.run(  # noqa: S603, S607
                    list(args),
                    text=True,
                    check=False,
                    env=env,
                )
        except FileNotFoundError as exc:
            raise ComposeError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ComposeError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ComposeError", "ComposeRuntime"]
