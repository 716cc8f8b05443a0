"""Offline archive extraction and validation.

An offline archive is a tar bundle (optionally gzip or zstd compressed) with a
fixed top-level directory::

    release/VERSION        single line holding the version tag
    release/ledger/        git repository carrying the release tags
    release/images/*.tar   one loadable image blob per file

Archives are never modified. Extraction always targets a scratch directory
obtained from :meth:`ArchiveReader.scratch_directory`, which removes it again
on every exit path.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .config import ArchiveConfig
from .errors import CorruptArchiveError, FilesystemError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExtractedLedger:
    """Marker and ledger fragment extracted from an archive."""

    version: str
    ledger_dir: Path


@dataclass(frozen=True, slots=True)
class ExtractedArchive:
    """Fully extracted archive contents."""

    version: str
    root: Path
    ledger_dir: Path
    images_dir: Path
    blobs: tuple[Path, ...]


class ArchiveReader:
    """Read offline archives laid out according to :class:`ArchiveConfig`."""

    def __init__(self, layout: ArchiveConfig, scratch_root: Path) -> None:
        """Initialise the reader with the archive *layout* and scratch location."""
        self.layout = layout
        self.scratch_root = scratch_root.expanduser()

    @property
    def marker_member(self) -> str:
        """Return the archive member name of the version marker."""
        return f"{self.layout.root}/{self.layout.marker}"

    @property
    def ledger_member(self) -> str:
        """Return the archive member name of the embedded ledger."""
        return f"{self.layout.root}/{self.layout.ledger}"

    @contextmanager
    def scratch_directory(self, purpose: str = "extract") -> Iterator[Path]:
        """Yield an exclusively owned scratch directory, removed on exit."""
        try:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
            path = Path(
                tempfile.mkdtemp(prefix=f"deployctl-{purpose}-", dir=str(self.scratch_root))
            )
        except OSError as exc:
            raise FilesystemError(
                f"Failed to create scratch directory under {self.scratch_root}: {exc}"
            ) from exc
        LOGGER.debug("Created scratch directory %s", path)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)
            LOGGER.debug("Removed scratch directory %s", path)

    def read_version_marker(self, archive_path: Path) -> str:
        """Return the version tag recorded in the archive's marker file."""
        self._require_archive(archive_path)
        result = self._tar(
            ["-xOf", str(archive_path), self.marker_member],
            description=f"read {self.marker_member}",
        )
        try:
            text = result.stdout.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptArchiveError(
                f"Unreadable version marker in {archive_path}: {exc}"
            ) from exc
        return _parse_marker(text, archive_path)

    def extract_ledger(self, archive_path: Path, destination: Path) -> ExtractedLedger:
        """Extract only the marker and ledger fragment into *destination*."""
        self._require_archive(archive_path)
        self._tar(
            [
                "-xf",
                str(archive_path),
                "-C",
                str(destination),
                self.marker_member,
                self.ledger_member,
            ],
            description="extract ledger",
        )
        root = destination / self.layout.root
        ledger_dir = root / self.layout.ledger
        if not ledger_dir.is_dir():
            raise CorruptArchiveError(
                f"Archive {archive_path} does not contain the ledger directory "
                f"'{self.ledger_member}'."
            )
        version = _read_marker_file(root / self.layout.marker, archive_path)
        return ExtractedLedger(version=version, ledger_dir=ledger_dir)

    def extract_all(self, archive_path: Path, destination: Path) -> ExtractedArchive:
        """Extract the whole archive into *destination* and validate its layout."""
        self._require_archive(archive_path)
        self._tar(
            ["-xf", str(archive_path), "-C", str(destination)],
            description="extract archive",
        )
        root = destination / self.layout.root
        images_dir = root / self.layout.images
        if not images_dir.is_dir():
            raise CorruptArchiveError(
                f"Archive {archive_path} does not contain the image directory "
                f"'{self.layout.root}/{self.layout.images}'."
            )
        version = _read_marker_file(root / self.layout.marker, archive_path)
        try:
            blobs = tuple(sorted(item for item in images_dir.iterdir() if item.is_file()))
        except OSError as exc:
            raise FilesystemError(f"Failed to list {images_dir}: {exc}") from exc
        return ExtractedArchive(
            version=version,
            root=root,
            ledger_dir=root / self.layout.ledger,
            images_dir=images_dir,
            blobs=blobs,
        )

    # ------------------------------------------------------------------
    def _require_archive(self, archive_path: Path) -> None:
        if not archive_path.is_file():
            raise CorruptArchiveError(f"Archive not found or not a regular file: {archive_path}")

    def _tar(self, args: Sequence[str], *, description: str) -> subprocess.CompletedProcess[bytes]:
        tar_bin = shutil.which(self.layout.tar_bin)
        if tar_bin is None:
            raise FilesystemError(
                f"The '{self.layout.tar_bin}' command is required to read offline archives."
            )
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                [tar_bin, *args],
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise FilesystemError(f"Failed to run {tar_bin}: {exc}") from exc
        if result.returncode != 0:
            output = result.stderr or result.stdout
            message = output.decode("utf-8", errors="replace").strip() or "tar command failed"
            raise CorruptArchiveError(f"Failed to {description}: {message}")
        return result


def _read_marker_file(path: Path, archive_path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise CorruptArchiveError(
            f"Archive {archive_path} does not contain a version marker."
        ) from None
    except (OSError, UnicodeDecodeError) as exc:
        raise CorruptArchiveError(f"Unreadable version marker in {archive_path}: {exc}") from exc
    return _parse_marker(text, archive_path)


def _parse_marker(text: str, archive_path: Path) -> str:
    for line in text.splitlines():
        candidate = line.strip()
        if candidate:
            return candidate
    raise CorruptArchiveError(f"Version marker in {archive_path} is empty.")


__all__ = ["ArchiveReader", "ExtractedArchive", "ExtractedLedger"]
