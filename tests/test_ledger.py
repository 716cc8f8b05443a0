"""Tests for the release ledger and tag ordering."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from deployctl.archive import ArchiveReader
from deployctl.config import ArchiveConfig
from deployctl.errors import CorruptArchiveError, NetworkError
from deployctl.providers.git import GitProvider
from deployctl.state.ledger import ReleaseLedger, sort_tags, version_sort_key
from tests.fakes import FakeGit, build_archive


def _ledger(tmp_path: Path, git: FakeGit) -> ReleaseLedger:
    reader = ArchiveReader(ArchiveConfig(), tmp_path / "scratch")
    return ReleaseLedger(git, remote="origin", archive_reader=reader)  # type: ignore[arg-type]


def test_sort_tags_orders_most_recent_first() -> None:
    """Semantic ordering beats lexical ordering, flavours sort after the base."""
    tags = ["v3.16.0", "v3.9.1", "v3.16.0-standard", "v3.16.4", "v3.16.3", "v3.16.10"]

    assert sort_tags(tags) == [
        "v3.16.10",
        "v3.16.4",
        "v3.16.3",
        "v3.16.0-standard",
        "v3.16.0",
        "v3.9.1",
    ]


def test_sort_tags_drops_duplicates_and_blanks() -> None:
    """Blank entries and duplicates never appear in the result."""
    assert sort_tags(["v1.0.0", "", "v1.0.0", "  "]) == ["v1.0.0"]


def test_unparseable_tags_rank_below_versions() -> None:
    """Tags that are not versions sort below any version, naturally among themselves."""
    ordered = sort_tags(["nightly-9", "v0.0.1", "nightly-10"])

    assert ordered == ["v0.0.1", "nightly-10", "nightly-9"]
    assert version_sort_key("v0.0.1") > version_sort_key("nightly-10")


def test_most_recent_and_membership(tmp_path: Path) -> None:
    """Queries reflect the local tags."""
    ledger = _ledger(tmp_path, FakeGit(["v3.16.0", "v3.16.4", "v3.16.3"]))

    assert ledger.most_recent() == "v3.16.4"
    assert ledger.all_known() == ["v3.16.4", "v3.16.3", "v3.16.0"]
    assert ledger.is_known("v3.16.3") is True
    assert ledger.is_known("v3.17.0") is False
    assert ledger.is_known("") is False


def test_empty_ledger(tmp_path: Path) -> None:
    """An empty ledger has no most recent tag."""
    ledger = _ledger(tmp_path, FakeGit())

    assert ledger.most_recent() is None
    assert ledger.all_known() == []


def test_refresh_from_remote_reports_added(tmp_path: Path) -> None:
    """Only newly fetched tags are reported as added."""
    git = FakeGit(["v1.0.0"], remotes={"origin": ["v1.0.0", "v1.1.0"]})
    ledger = _ledger(tmp_path, git)

    refresh = ledger.refresh_from_remote()

    assert refresh.source == "remote:origin"
    assert refresh.added == ("v1.1.0",)
    assert refresh.most_recent == "v1.1.0"
    assert refresh.marker is None
    assert git.fetched == ["origin"]


def test_refresh_from_remote_wraps_git_error(tmp_path: Path) -> None:
    """Unreachable remotes raise NetworkError carrying git's text."""
    ledger = _ledger(tmp_path, FakeGit(["v1.0.0"]))

    with pytest.raises(NetworkError) as excinfo:
        ledger.refresh_from_remote()

    assert "Could not resolve host" in str(excinfo.value)
    assert ledger.all_known() == ["v1.0.0"]


@pytest.mark.requires_tar
def test_refresh_from_archive_merges_tags(tmp_path: Path) -> None:
    """Archive ledgers are merged and the scratch copy is removed."""
    git = FakeGit(["v3.15.0"])
    ledger = _ledger(tmp_path, git)
    archive = build_archive(
        tmp_path / "dist",
        "v3.16.0-standard",
        ledger_tags=["v3.15.0", "v3.16.0", "v3.16.0-standard"],
    )

    refresh = ledger.refresh_from_archive(archive)

    assert refresh.marker == "v3.16.0-standard"
    assert refresh.added == ("v3.16.0-standard", "v3.16.0")
    assert "v3.15.0" in ledger.all_known()
    assert list((tmp_path / "scratch").iterdir()) == []


@pytest.mark.requires_tar
def test_refresh_from_archive_without_ledger(tmp_path: Path) -> None:
    """A missing ledger fragment is a corrupt archive."""
    ledger = _ledger(tmp_path, FakeGit(["v1.0.0"]))
    archive = build_archive(tmp_path / "dist", "v1.1.0", include_ledger=False)

    with pytest.raises(CorruptArchiveError):
        ledger.refresh_from_archive(archive)

    assert ledger.all_known() == ["v1.0.0"]
    assert list((tmp_path / "scratch").iterdir()) == []


@pytest.mark.requires_tar
@pytest.mark.requires_git
def test_refresh_from_archive_unreadable_ledger(tmp_path: Path) -> None:
    """A ledger fragment git cannot fetch from is a corrupt archive."""
    checkout = tmp_path / "checkout"
    subprocess.run(["git", "init", "--quiet", str(checkout)], check=True)
    reader = ArchiveReader(ArchiveConfig(), tmp_path / "scratch")
    ledger = ReleaseLedger(GitProvider(checkout), remote="origin", archive_reader=reader)
    archive = build_archive(tmp_path / "dist", "v1.0.0")

    with pytest.raises(CorruptArchiveError) as excinfo:
        ledger.refresh_from_archive(archive)

    assert not isinstance(excinfo.value, NetworkError)
    assert ledger.all_known() == []
    assert list((tmp_path / "scratch").iterdir()) == []


def test_checkout_delegates_to_git(tmp_path: Path) -> None:
    """Checkout moves the release checkout."""
    git = FakeGit(["v1.0.0"])
    ledger = _ledger(tmp_path, git)

    ledger.checkout("v1.0.0")

    assert git.head == "v1.0.0"
