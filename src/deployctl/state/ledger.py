"""Local mirror of sanctioned release tags.

The ledger is the tag set of the release checkout. It only grows: refreshes
fetch tags from the configured remote or from the ledger embedded in an
offline archive, and git never deletes an existing tag during those fetches.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..archive import ArchiveReader
from ..errors import CorruptArchiveError, NetworkError
from ..providers.git import GitError, GitProvider

LOGGER = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"^[vV]?(?P<base>[^-]+)(?:-(?P<flavour>.+))?$")
_NATURAL_SPLIT = re.compile(r"(\d+)")


def version_sort_key(tag: str) -> tuple[object, ...]:
    """Return the ordering key for *tag* (larger means more recent).

    Tags of the form ``v<version>[-<flavour>]`` whose version parses under
    PEP 440 rank above anything else and compare by ``(version, flavour)``.
    Remaining tags fall back to a digit-aware natural ordering.
    """
    match = _TAG_PATTERN.match(tag.strip())
    if match:
        try:
            parsed = Version(match.group("base"))
        except InvalidVersion:
            pass
        else:
            return (1, parsed, match.group("flavour") or "")
    natural = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _NATURAL_SPLIT.split(tag)
        if part
    )
    return (0, natural)


def sort_tags(tags: Iterable[str]) -> list[str]:
    """Return unique *tags* ordered most recent first."""
    unique = {tag.strip() for tag in tags if tag and tag.strip()}
    return sorted(unique, key=version_sort_key, reverse=True)


@dataclass(frozen=True, slots=True)
class LedgerRefresh:
    """Outcome of a ledger refresh."""

    source: str
    added: tuple[str, ...]
    most_recent: str | None
    marker: str | None = None
    known: tuple[str, ...] = field(default_factory=tuple)


class ReleaseLedger:
    """Query and refresh the set of sanctioned version tags."""

    def __init__(self, git: GitProvider, *, remote: str, archive_reader: ArchiveReader) -> None:
        """Bind the ledger to its git checkout, remote and archive reader."""
        self.git = git
        self.remote = remote
        self.archive_reader = archive_reader

    def all_known(self) -> list[str]:
        """Return all known tags, most recent first."""
        return sort_tags(self.git.list_tags())

    def most_recent(self) -> str | None:
        """Return the most recent known tag, or None for an empty ledger."""
        known = self.all_known()
        return known[0] if known else None

    def is_known(self, tag: str) -> bool:
        """Return True when *tag* is present in the ledger."""
        normalized = tag.strip()
        return bool(normalized) and normalized in set(self.git.list_tags())

    def refresh_from_remote(self) -> LedgerRefresh:
        """Merge tags from the configured remote into the ledger."""
        before = set(self.git.list_tags())
        try:
            self.git.fetch_tags(self.remote)
        except GitError as exc:
            raise NetworkError(
                f"Unable to fetch release tags from '{self.remote}': {exc}",
                hint="Check connectivity, or use `deployctl update --archive <path>` offline.",
            ) from exc
        return self._report(f"remote:{self.remote}", before)

    def refresh_from_archive(self, archive_path: Path) -> LedgerRefresh:
        """Merge tags from the ledger embedded in the offline archive."""
        before = set(self.git.list_tags())
        with self.archive_reader.scratch_directory("ledger") as scratch:
            extracted = self.archive_reader.extract_ledger(archive_path, scratch)
            try:
                self.git.fetch_tags(str(extracted.ledger_dir))
            except GitError as exc:
                raise CorruptArchiveError(
                    f"Unreadable release ledger in {archive_path}: {exc}"
                ) from exc
        return self._report(f"archive:{archive_path}", before, marker=extracted.version)

    def checkout(self, tag: str) -> None:
        """Switch the release checkout to *tag*."""
        self.git.checkout(tag)

    def _report(self, source: str, before: set[str], *, marker: str | None = None) -> LedgerRefresh:
        known = sort_tags(self.git.list_tags())
        added = tuple(tag for tag in known if tag not in before)
        LOGGER.debug("Ledger refresh from %s added %d tag(s)", source, len(added))
        return LedgerRefresh(
            source=source,
            added=added,
            most_recent=known[0] if known else None,
            marker=marker,
            known=tuple(known),
        )


__all__ = ["LedgerRefresh", "ReleaseLedger", "sort_tags", "version_sort_key"]
