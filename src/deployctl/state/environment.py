"""Persistence for the single active environment configuration.

The configuration lives in a line-oriented ``KEY=VALUE`` file (the compose
``.env`` file) that also carries the generated secret, so it is written with
owner-only permissions. Every write goes through a sibling temporary file that
is renamed over the original; readers therefore observe either the previous
or the new complete record, never a truncated one.
"""
from __future__ import annotations

import os
import tempfile
import textwrap
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from ..errors import (
    AlreadyExistsError,
    FilesystemError,
    NotConfiguredError,
    UnknownFieldError,
)

PORT_FIELD = "EXTERNAL_HTTP_PORT"
VERSION_FIELD = "VERSION"
SECRET_FIELD = "SECRET_KEY"
ORIGIN_FIELD = "INSTALL_ORIGIN"

FIELD_ORDER = (PORT_FIELD, VERSION_FIELD, SECRET_FIELD, ORIGIN_FIELD)

ENV_FILE_MODE = 0o600

_HEADER = textwrap.dedent(
    """\
    # Managed by deployctl. Edit with `deployctl configure`; manual changes to
    # VERSION or SECRET_KEY may leave the deployment inconsistent.
    """
)


class EnvironmentStore(Protocol):
    """Storage contract for the environment configuration."""

    def exists(self) -> bool:
        """Return True when a record is present."""

    def create(self, initial: Mapping[str, str]) -> None:
        """Write a fresh record; fail if one already exists."""

    def read(self, field: str) -> str:
        """Return the value of *field*."""

    def read_all(self) -> dict[str, str]:
        """Return every field in file order."""

    def update(self, field: str, value: str) -> None:
        """Replace the value of a single existing *field*."""


def render_env(initial: Mapping[str, str]) -> str:
    """Return the textual form of a freshly created record."""
    ordered = [key for key in FIELD_ORDER if key in initial]
    ordered.extend(key for key in initial if key not in FIELD_ORDER)
    lines = [f"{key}={_check_value(key, initial[key])}" for key in ordered]
    return _HEADER + "\n".join(lines) + "\n"


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring comments and blank lines."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def substitute_field(text: str, field: str, value: str) -> str:
    """Return *text* with the line for *field* rewritten to *value*.

    Comments, blank lines and the position of every other line are preserved.
    Raises :class:`UnknownFieldError` when *field* has no line.
    """
    _check_value(field, value)
    lines = text.splitlines(keepends=True)
    replaced = False
    for index, raw_line in enumerate(lines):
        stripped = raw_line.strip()
        if stripped.startswith("#") or "=" not in stripped:
            continue
        key = stripped.split("=", 1)[0].strip()
        if key != field:
            continue
        newline = "\n" if raw_line.endswith("\n") else ""
        lines[index] = f"{field}={value}{newline}"
        replaced = True
    if not replaced:
        raise UnknownFieldError(f"Environment configuration has no field '{field}'.")
    return "".join(lines)


def _check_value(field: str, value: str) -> str:
    if "\n" in value or "\r" in value:
        raise ValueError(f"Value for '{field}' must not contain line breaks.")
    return value


class FileEnvironmentStore:
    """File-backed :class:`EnvironmentStore` using atomic replace-on-write."""

    def __init__(self, path: Path) -> None:
        """Bind the store to the env file at *path*."""
        self.path = path.expanduser()

    def exists(self) -> bool:
        """Return True when the env file exists."""
        return self.path.is_file()

    def create(self, initial: Mapping[str, str]) -> None:
        """Write *initial* as a new record with owner-only permissions."""
        if self.exists():
            raise AlreadyExistsError(f"Environment configuration already exists at {self.path}.")
        self._atomic_write(render_env(initial))

    def read(self, field: str) -> str:
        """Return the value of *field*."""
        values = self.read_all()
        if field not in values:
            raise UnknownFieldError(f"Environment configuration has no field '{field}'.")
        return values[field]

    def read_all(self) -> dict[str, str]:
        """Return all fields of the record."""
        return parse_env(self._read_text())

    def update(self, field: str, value: str) -> None:
        """Rewrite a single field in place (atomically)."""
        updated = substitute_field(self._read_text(), field, value)
        self._atomic_write(updated)

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotConfiguredError(
                f"No environment configuration found at {self.path}.",
                hint="Run `deployctl install` to create one.",
            ) from None
        except OSError as exc:
            raise FilesystemError(f"Failed to read {self.path}: {exc}") from exc

    def _atomic_write(self, content: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise FilesystemError(f"Failed to prepare {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                os.fchmod(handle.fileno(), ENV_FILE_MODE)
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise FilesystemError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


class MemoryEnvironmentStore:
    """In-memory :class:`EnvironmentStore` mirroring the file semantics."""

    def __init__(self, text: str | None = None) -> None:
        """Start empty, or from the textual record *text*."""
        self._text = text
        self.writes = 0

    @property
    def text(self) -> str | None:
        """Return the current textual record."""
        return self._text

    def exists(self) -> bool:
        """Return True when a record is held."""
        return self._text is not None

    def create(self, initial: Mapping[str, str]) -> None:
        """Store *initial* as a new record."""
        if self._text is not None:
            raise AlreadyExistsError("Environment configuration already exists.")
        self._text = render_env(initial)
        self.writes += 1

    def read(self, field: str) -> str:
        """Return the value of *field*."""
        values = self.read_all()
        if field not in values:
            raise UnknownFieldError(f"Environment configuration has no field '{field}'.")
        return values[field]

    def read_all(self) -> dict[str, str]:
        """Return all fields of the record."""
        return parse_env(self._require())

    def update(self, field: str, value: str) -> None:
        """Rewrite a single field."""
        self._text = substitute_field(self._require(), field, value)
        self.writes += 1

    def _require(self) -> str:
        if self._text is None:
            raise NotConfiguredError("No environment configuration exists.")
        return self._text


__all__ = [
    "ENV_FILE_MODE",
    "EnvironmentStore",
    "FileEnvironmentStore",
    "MemoryEnvironmentStore",
    "ORIGIN_FIELD",
    "PORT_FIELD",
    "SECRET_FIELD",
    "VERSION_FIELD",
    "parse_env",
    "render_env",
    "substitute_field",
]
