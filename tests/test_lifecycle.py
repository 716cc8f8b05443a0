"""Tests for the lifecycle controller."""
from __future__ import annotations

from pathlib import Path

import pytest

from deployctl.errors import (
    AlreadyConfiguredError,
    CertificateMissingError,
    CorruptArchiveError,
    NetworkError,
    NotConfiguredError,
    NoVersionsAvailableError,
    PartialUpgradeError,
    PullFailedError,
    RequiresOfflineUpgradeError,
    RuntimeCommandError,
    UnknownVersionError,
)
from deployctl.lifecycle import (
    DeploymentState,
    InstallOrigin,
    RefreshSource,
    UpgradeTarget,
)
from tests.fakes import FakeGit, FakeRuntime, Harness, build_archive

ONLINE_TAGS = ["v3.16.4", "v3.16.3", "v3.16.0"]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Return a configured controller knowing three tags."""
    h = Harness(tmp_path, tags=ONLINE_TAGS)
    h.controller.bootstrap()
    return h


# ----------------------------------------------------------------------
# bootstrap
# ----------------------------------------------------------------------
def test_bootstrap_writes_initial_record(tmp_path: Path) -> None:
    """Bootstrap creates the record with default port, empty version and a secret."""
    h = Harness(tmp_path)

    result = h.controller.bootstrap()

    assert result.port == 443
    assert result.origin is InstallOrigin.ONLINE
    assert h.env() == {
        "EXTERNAL_HTTP_PORT": "443",
        "VERSION": "",
        "SECRET_KEY": "s3cr3t-token",
        "INSTALL_ORIGIN": "online",
    }
    assert h.controller.state() is DeploymentState.CONFIGURED


def test_bootstrap_is_idempotent(tmp_path: Path) -> None:
    """A second bootstrap reports AlreadyConfigured and mutates nothing."""
    h = Harness(tmp_path)
    h.controller.bootstrap()
    before = h.store.text

    with pytest.raises(AlreadyConfiguredError) as excinfo:
        h.controller.bootstrap(InstallOrigin.ARCHIVE)

    assert excinfo.value.fatal is False
    assert h.store.text == before
    assert h.store.writes == 1


# ----------------------------------------------------------------------
# upgrade: resolution
# ----------------------------------------------------------------------
def test_upgrade_requires_configuration(tmp_path: Path) -> None:
    """Upgrading an unconfigured installation fails before any side effect."""
    h = Harness(tmp_path, tags=ONLINE_TAGS)

    with pytest.raises(NotConfiguredError):
        h.controller.upgrade(UpgradeTarget.latest())

    assert h.runtime.calls == []
    assert h.git.head is None


def test_upgrade_explicit_commits_version(harness: Harness) -> None:
    """An explicit known tag is pulled, checked out and written."""
    result = harness.controller.upgrade(UpgradeTarget.explicit("v3.16.3"))

    assert result.version == "v3.16.3"
    assert result.previous is None
    assert result.source == "pull"
    assert harness.runtime.calls == [("pull", "v3.16.3")]
    assert harness.git.head == "v3.16.3"
    assert harness.env()["VERSION"] == "v3.16.3"


def test_upgrade_unknown_version_leaves_state(harness: Harness) -> None:
    """Unknown tags are rejected without pulling or writing."""
    harness.controller.upgrade(UpgradeTarget.explicit("v3.16.0"))
    writes = harness.store.writes

    with pytest.raises(UnknownVersionError) as excinfo:
        harness.controller.upgrade(UpgradeTarget.explicit("v9.9.9"))

    assert "deployctl update" in (excinfo.value.hint or "")
    assert harness.env()["VERSION"] == "v3.16.0"
    assert harness.store.writes == writes
    assert ("pull", "v9.9.9") not in harness.runtime.calls


def test_upgrade_latest_picks_most_recent(harness: Harness) -> None:
    """Latest resolves to the highest tag under version ordering."""
    result = harness.controller.upgrade(UpgradeTarget.latest())

    assert result.version == "v3.16.4"


def test_upgrade_latest_without_versions(tmp_path: Path) -> None:
    """An empty ledger cannot satisfy a latest upgrade."""
    h = Harness(tmp_path)
    h.controller.bootstrap()

    with pytest.raises(NoVersionsAvailableError):
        h.controller.upgrade(UpgradeTarget.latest())
    assert h.runtime.calls == []


def test_upgrade_reapplies_current_version(harness: Harness) -> None:
    """Re-running an upgrade to the active version is permitted."""
    harness.controller.upgrade(UpgradeTarget.explicit("v3.16.4"))

    result = harness.controller.upgrade(UpgradeTarget.explicit("v3.16.4"))

    assert result.previous == "v3.16.4"
    assert result.version == "v3.16.4"
    assert harness.env()["VERSION"] == "v3.16.4"


# ----------------------------------------------------------------------
# upgrade: materialization failures
# ----------------------------------------------------------------------
def test_pull_failure_online_origin(tmp_path: Path) -> None:
    """Online installations surface PullFailed and keep the old version."""
    h = Harness(tmp_path, tags=ONLINE_TAGS, runtime=FakeRuntime(fail_pull=True))
    h.controller.bootstrap()

    with pytest.raises(PullFailedError) as excinfo:
        h.controller.upgrade(UpgradeTarget.latest())

    assert not isinstance(excinfo.value, RequiresOfflineUpgradeError)
    assert "manifest" in str(excinfo.value)
    assert h.env()["VERSION"] == ""
    assert h.git.head is None


def test_pull_failure_archive_origin(tmp_path: Path) -> None:
    """Archive installations are told to upgrade from an archive."""
    h = Harness(tmp_path, tags=ONLINE_TAGS, runtime=FakeRuntime(fail_pull=True))
    h.controller.bootstrap(InstallOrigin.ARCHIVE)

    with pytest.raises(RequiresOfflineUpgradeError) as excinfo:
        h.controller.upgrade(UpgradeTarget.explicit("v3.16.3"))

    assert "--archive" in (excinfo.value.hint or "")
    assert h.env()["VERSION"] == ""


def test_pull_failure_falls_back_to_cached_images(tmp_path: Path) -> None:
    """Blobs cached by an earlier archive upgrade are loaded when the pull fails."""
    h = Harness(tmp_path, tags=ONLINE_TAGS, runtime=FakeRuntime(fail_pull=True))
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    cache = h.image_cache_dir / "v3.16.3"
    cache.mkdir(parents=True)
    (cache / "db.tar").write_bytes(b"db")
    (cache / "web.tar").write_bytes(b"web")

    result = h.controller.upgrade(UpgradeTarget.explicit("v3.16.3"))

    assert result.source == "cache"
    assert h.runtime.loaded == ["db.tar", "web.tar"]
    assert h.env()["VERSION"] == "v3.16.3"


def test_commit_failure_reports_partial_upgrade(tmp_path: Path) -> None:
    """A failing checkout after a successful pull is reported as retry-safe."""
    git = FakeGit(ONLINE_TAGS, fail_checkout=True)
    h = Harness(tmp_path, git=git)
    h.controller.bootstrap()

    with pytest.raises(PartialUpgradeError) as excinfo:
        h.controller.upgrade(UpgradeTarget.explicit("v3.16.4"))

    assert excinfo.value.version == "v3.16.4"
    assert "deployctl upgrade v3.16.4" in (excinfo.value.hint or "")
    assert h.runtime.calls == [("pull", "v3.16.4")]
    assert h.env()["VERSION"] == ""


def test_upgrade_advice_reflects_tls_and_running(harness: Harness) -> None:
    """Post-upgrade advice depends on TLS presence and running services."""
    result = harness.controller.upgrade(UpgradeTarget.latest())
    assert result.tls_ready is False
    assert any("configure --tls" in line for line in result.advice)

    harness.provision_tls()
    harness.runtime.running = True
    result = harness.controller.upgrade(UpgradeTarget.latest())

    assert result.tls_ready is True
    assert result.running is True
    assert any("deployctl up" in line for line in result.advice)
    assert any("re-run" in line for line in result.advice)


# ----------------------------------------------------------------------
# refresh
# ----------------------------------------------------------------------
def test_refresh_remote_is_monotonic(tmp_path: Path) -> None:
    """Refreshing only ever adds tags."""
    h = Harness(tmp_path, tags=["v3.16.0"], remotes={"origin": ["v3.16.3", "v3.16.4"]})
    h.controller.bootstrap()
    before = set(h.ledger.all_known())

    report = h.controller.refresh(RefreshSource.remote())

    after = set(h.ledger.all_known())
    assert before <= after
    assert report.refresh.added == ("v3.16.4", "v3.16.3")
    assert report.refresh.most_recent == "v3.16.4"
    assert report.update_available is True


def test_refresh_remote_unreachable(tmp_path: Path) -> None:
    """Network failures leave the ledger untouched."""
    h = Harness(tmp_path, tags=["v3.16.0"])

    with pytest.raises(NetworkError):
        h.controller.refresh(RefreshSource.remote())

    assert h.ledger.all_known() == ["v3.16.0"]


def test_refresh_does_not_touch_environment(harness: Harness) -> None:
    """Refresh never writes the environment record."""
    harness.git.remotes["origin"] = ["v3.17.0"]
    writes = harness.store.writes

    harness.controller.refresh(RefreshSource.remote())

    assert harness.store.writes == writes


# ----------------------------------------------------------------------
# archive upgrades
# ----------------------------------------------------------------------
@pytest.mark.requires_tar
def test_archive_upgrade_requires_known_marker(tmp_path: Path) -> None:
    """An archive whose version is not in the ledger is rejected before extraction."""
    h = Harness(tmp_path)
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    archive = build_archive(tmp_path / "dist", "v3.16.0-standard")

    with pytest.raises(UnknownVersionError) as excinfo:
        h.controller.upgrade(UpgradeTarget.archive(archive))

    assert "update --archive" in (excinfo.value.hint or "")
    assert h.runtime.calls == []
    assert h.scratch_entries() == []


@pytest.mark.requires_tar
def test_archive_upgrade_missing_images(tmp_path: Path) -> None:
    """Archives without an image directory are corrupt and leave no scratch."""
    h = Harness(tmp_path, tags=["v3.16.0-standard"])
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    archive = build_archive(tmp_path / "dist", "v3.16.0-standard", include_images=False)

    with pytest.raises(CorruptArchiveError):
        h.controller.upgrade(UpgradeTarget.archive(archive))

    assert h.env()["VERSION"] == ""
    assert h.scratch_entries() == []


@pytest.mark.requires_tar
def test_archive_upgrade_never_rewrites_cache(tmp_path: Path) -> None:
    """Existing cache files are kept as they are."""
    h = Harness(tmp_path, tags=["v3.16.0-standard"])
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    cache = h.image_cache_dir / "v3.16.0-standard"
    cache.mkdir(parents=True)
    (cache / "web.tar").write_bytes(b"original")
    archive = build_archive(
        tmp_path / "dist",
        "v3.16.0-standard",
        blobs={"web.tar": b"replacement", "db.tar": b"db"},
    )

    result = h.controller.upgrade(UpgradeTarget.archive(archive))

    assert (cache / "web.tar").read_bytes() == b"original"
    assert (cache / "db.tar").read_bytes() == b"db"
    assert sorted(path.name for path in result.cached) == ["db.tar", "web.tar"]


@pytest.mark.requires_tar
def test_archive_upgrade_load_failure_keeps_state(tmp_path: Path) -> None:
    """A blob that fails to load aborts before caching or committing."""
    h = Harness(
        tmp_path,
        tags=["v3.16.0-standard"],
        runtime=FakeRuntime(fail_load="web.tar"),
    )
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    archive = build_archive(
        tmp_path / "dist",
        "v3.16.0-standard",
        blobs={"db.tar": b"db", "web.tar": b"web", "worker.tar": b"worker"},
    )

    with pytest.raises(RuntimeCommandError) as excinfo:
        h.controller.upgrade(UpgradeTarget.archive(archive))

    assert "web.tar" in str(excinfo.value)
    assert h.runtime.loaded == ["db.tar"]
    assert h.env()["VERSION"] == ""
    assert h.git.head is None
    assert not (h.image_cache_dir / "v3.16.0-standard").exists()
    assert h.scratch_entries() == []


@pytest.mark.requires_tar
def test_archive_upgrade_with_gzip_archive(tmp_path: Path) -> None:
    """Compressed archives are read transparently."""
    h = Harness(tmp_path)
    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    archive = build_archive(
        tmp_path / "dist",
        "v3.16.1-standard",
        name="release.tar.gz",
        mode="w:gz",
    )

    h.controller.refresh(RefreshSource.archive(archive))
    result = h.controller.upgrade(UpgradeTarget.archive(archive))

    assert result.version == "v3.16.1-standard"
    assert h.runtime.loaded == ["app.tar"]


# ----------------------------------------------------------------------
# up / down / configure
# ----------------------------------------------------------------------
def test_up_requires_configuration(tmp_path: Path) -> None:
    """Starting an unconfigured installation is a precondition failure."""
    h = Harness(tmp_path)

    with pytest.raises(NotConfiguredError):
        h.controller.up()
    assert h.runtime.calls == []


def test_up_requires_both_tls_artifacts(harness: Harness) -> None:
    """A lone certificate does not satisfy the TLS precondition."""
    harness.provision_tls()
    harness.tls_paths.key.unlink()
    assert harness.controller.state() is DeploymentState.CONFIGURED

    with pytest.raises(CertificateMissingError):
        harness.controller.up()
    assert "start" not in harness.runtime.names()

    harness.provision_tls()
    harness.tls_paths.cert.unlink()
    with pytest.raises(CertificateMissingError):
        harness.controller.up()
    assert "start" not in harness.runtime.names()


def test_up_starts_when_ready(harness: Harness) -> None:
    """With both artifacts present the runtime is started."""
    harness.provision_tls()
    assert harness.controller.state() is DeploymentState.READY

    result = harness.controller.up()

    assert result.url == "https://localhost"
    assert result.migrated_from is None
    assert harness.runtime.names() == ["start"]


def test_up_reports_start_failure(tmp_path: Path) -> None:
    """Runtime start failures propagate with the runtime diagnostic."""
    h = Harness(tmp_path, tags=ONLINE_TAGS, runtime=FakeRuntime(fail_start=True))
    h.controller.bootstrap()
    h.provision_tls()

    with pytest.raises(RuntimeCommandError) as excinfo:
        h.controller.up()

    assert "port is already allocated" in str(excinfo.value)
    assert h.runtime.running is False


def test_up_migrates_legacy_port(harness: Harness) -> None:
    """Port 80 is rewritten to 443 before starting."""
    harness.provision_tls()
    harness.store.update("EXTERNAL_HTTP_PORT", "80")

    result = harness.controller.up()

    assert result.migrated_from == 80
    assert result.port == 443
    assert harness.env()["EXTERNAL_HTTP_PORT"] == "443"


def test_up_reports_custom_port(harness: Harness) -> None:
    """Non-default ports are part of the reported address."""
    harness.provision_tls()
    harness.controller.configure_port(8443)

    result = harness.controller.up()

    assert result.url == "https://localhost:8443"


def test_down_stops_runtime(harness: Harness) -> None:
    """Down delegates to the runtime."""
    harness.controller.down()

    assert harness.runtime.names() == ["stop"]


def test_configure_port_validates_range(harness: Harness) -> None:
    """Ports outside 1-65535 are rejected without writing."""
    writes = harness.store.writes

    with pytest.raises(ValueError):
        harness.controller.configure_port(70000)

    assert harness.store.writes == writes
    assert harness.controller.configure_port(8443) == 443
    assert harness.env()["EXTERNAL_HTTP_PORT"] == "8443"


def test_status_snapshot(harness: Harness) -> None:
    """Status reports version, most recent tag and origin."""
    harness.controller.upgrade(UpgradeTarget.explicit("v3.16.3"))

    snapshot = harness.controller.status()

    assert snapshot.state is DeploymentState.CONFIGURED
    assert snapshot.version == "v3.16.3"
    assert snapshot.most_recent == "v3.16.4"
    assert snapshot.update_available is True
    assert snapshot.port == 443
    assert snapshot.origin == "online"
    assert snapshot.running is False


def test_status_unconfigured(tmp_path: Path) -> None:
    """Status works before bootstrap."""
    h = Harness(tmp_path)

    snapshot = h.controller.status()

    assert snapshot.state is DeploymentState.UNCONFIGURED
    assert snapshot.version is None
    assert snapshot.port is None


def test_install_bootstraps_then_upgrades(tmp_path: Path) -> None:
    """Install creates the record when missing and then upgrades."""
    h = Harness(tmp_path, tags=ONLINE_TAGS)

    first = h.controller.install(UpgradeTarget.latest())
    second = h.controller.install(UpgradeTarget.explicit("v3.16.3"))

    assert first.bootstrapped is True
    assert second.bootstrapped is False
    assert h.env()["VERSION"] == "v3.16.3"
    assert h.env()["SECRET_KEY"] == "s3cr3t-token"


def test_install_rejected_version_writes_nothing(tmp_path: Path) -> None:
    """An unknown version is rejected before the environment record exists."""
    h = Harness(tmp_path, tags=ONLINE_TAGS)

    with pytest.raises(UnknownVersionError):
        h.controller.install(UpgradeTarget.explicit("v9.9.9"))

    assert h.store.exists() is False
    assert h.runtime.calls == []


def test_install_pull_failure_writes_nothing(tmp_path: Path) -> None:
    """A failed first install leaves the installation unconfigured."""
    h = Harness(tmp_path, tags=ONLINE_TAGS, runtime=FakeRuntime(fail_pull=True))

    with pytest.raises(PullFailedError):
        h.controller.install(UpgradeTarget.latest())

    assert h.store.exists() is False
    assert h.git.head is None


@pytest.mark.requires_tar
def test_archive_install_after_failed_online_install(tmp_path: Path) -> None:
    """An archive install after a failed online one records the archive origin."""
    h = Harness(tmp_path, tags=["v1.0.0"], runtime=FakeRuntime(fail_pull=True))
    archive = build_archive(
        tmp_path / "dist",
        "v1.1.0",
        ledger_tags=["v1.0.0", "v1.1.0"],
    )

    with pytest.raises(PullFailedError):
        h.controller.install(UpgradeTarget.latest())
    h.controller.refresh(RefreshSource.archive(archive))
    result = h.controller.install(UpgradeTarget.archive(archive))

    assert result.bootstrapped is True
    assert h.env()["INSTALL_ORIGIN"] == "archive"
    assert h.env()["VERSION"] == "v1.1.0"
    with pytest.raises(RequiresOfflineUpgradeError):
        h.controller.upgrade(UpgradeTarget.explicit("v1.0.0"))


# ----------------------------------------------------------------------
# end-to-end scenarios
# ----------------------------------------------------------------------
def test_online_install_scenario(tmp_path: Path) -> None:
    """Bootstrap, refresh, upgrade, blocked up, provision TLS, up."""
    h = Harness(tmp_path, remotes={"origin": ONLINE_TAGS})

    h.controller.bootstrap()
    h.controller.refresh(RefreshSource.remote())
    result = h.controller.upgrade(UpgradeTarget.latest())

    assert result.version == "v3.16.4"
    assert h.env()["VERSION"] == "v3.16.4"
    with pytest.raises(CertificateMissingError):
        h.controller.up()

    h.provision_tls()
    up = h.controller.up()

    assert up.url == "https://localhost"
    assert h.runtime.names() == ["pull", "start"]


@pytest.mark.requires_tar
def test_offline_install_scenario(tmp_path: Path) -> None:
    """An archive-origin install loads and caches every blob."""
    h = Harness(tmp_path)
    archive = build_archive(
        tmp_path / "dist",
        "v3.16.0-standard",
        ledger_tags=["v3.16.0", "v3.16.0-standard"],
        blobs={"web.tar": b"web", "db.tar": b"db", "worker.tar": b"worker"},
    )

    h.controller.bootstrap(InstallOrigin.ARCHIVE)
    refresh = h.controller.refresh(RefreshSource.archive(archive))
    result = h.controller.upgrade(UpgradeTarget.archive(archive))

    assert refresh.refresh.marker == "v3.16.0-standard"
    assert refresh.refresh.most_recent == "v3.16.0-standard"
    assert result.version == "v3.16.0-standard"
    assert result.source == "archive"
    assert sorted(h.runtime.loaded) == ["db.tar", "web.tar", "worker.tar"]
    assert "pull" not in h.runtime.names()
    cache = h.image_cache_dir / "v3.16.0-standard"
    assert sorted(path.name for path in cache.iterdir()) == ["db.tar", "web.tar", "worker.tar"]
    assert h.env()["VERSION"] == "v3.16.0-standard"
    assert h.env()["INSTALL_ORIGIN"] == "archive"
    assert h.git.head == "v3.16.0-standard"
    assert h.scratch_entries() == []
