"""Release lifecycle orchestration.

The controller resolves which version to run, materializes its images through
the container runtime (online pull or offline archive), and only then commits
the version to the release checkout and the environment configuration. Every
validation happens before the first side effect, so a rejected request leaves
the installation untouched.

Deployment states::

    UNCONFIGURED --bootstrap--> CONFIGURED --certificates--> READY --up--> running
"""
from __future__ import annotations

import logging
import secrets
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from .archive import ArchiveReader
from .errors import (
    AlreadyConfiguredError,
    CertificateMissingError,
    CorruptArchiveError,
    DeployctlError,
    FilesystemError,
    NotConfiguredError,
    NoVersionsAvailableError,
    PartialUpgradeError,
    PullFailedError,
    RequiresOfflineUpgradeError,
    RuntimeCommandError,
    UnknownVersionError,
)
from .providers.git import GitError
from .providers.runtime import ContainerRuntime
from .state.environment import (
    ORIGIN_FIELD,
    PORT_FIELD,
    SECRET_FIELD,
    VERSION_FIELD,
    EnvironmentStore,
)
from .state.ledger import LedgerRefresh, ReleaseLedger, version_sort_key
from .tls import CertificateProvisioner

LOGGER = logging.getLogger(__name__)

HTTPS_PORT = 443


class InstallOrigin(str, Enum):
    """How the installation receives its images."""

    ONLINE = "online"
    ARCHIVE = "archive"


class DeploymentState(Enum):
    """Coarse lifecycle state of the installation."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    READY = "ready"


@dataclass(frozen=True)
class RefreshSource:
    """Where a ledger refresh pulls tags from."""

    kind: Literal["remote", "archive"]
    path: Path | None = None

    @classmethod
    def remote(cls) -> RefreshSource:
        """Refresh from the configured ledger remote."""
        return cls(kind="remote")

    @classmethod
    def archive(cls, path: Path) -> RefreshSource:
        """Refresh from the ledger embedded in the archive at *path*."""
        return cls(kind="archive", path=path)


@dataclass(frozen=True)
class UpgradeTarget:
    """Version selection for an upgrade."""

    kind: Literal["latest", "explicit", "archive"]
    tag: str | None = None
    path: Path | None = None

    @classmethod
    def latest(cls) -> UpgradeTarget:
        """Select the most recent known tag."""
        return cls(kind="latest")

    @classmethod
    def explicit(cls, tag: str) -> UpgradeTarget:
        """Select the known tag *tag*."""
        return cls(kind="explicit", tag=tag.strip())

    @classmethod
    def archive(cls, path: Path) -> UpgradeTarget:
        """Select the version packaged in the archive at *path*."""
        return cls(kind="archive", path=path)


@dataclass(frozen=True)
class BootstrapResult:
    """Initial values written by :meth:`LifecycleController.bootstrap`."""

    port: int
    origin: InstallOrigin


@dataclass(frozen=True)
class RefreshReport:
    """Ledger refresh outcome in the context of the active deployment."""

    refresh: LedgerRefresh
    active_version: str | None
    update_available: bool


@dataclass(frozen=True)
class UpgradeResult:
    """Outcome of a committed upgrade."""

    version: str
    previous: str | None
    source: Literal["pull", "cache", "archive"]
    loaded: tuple[Path, ...] = ()
    cached: tuple[Path, ...] = ()
    tls_ready: bool = False
    running: bool = False
    advice: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class InstallResult:
    """Outcome of ``install``: bootstrap (when needed) followed by upgrade."""

    bootstrapped: bool
    upgrade: UpgradeResult


@dataclass(frozen=True)
class UpResult:
    """Outcome of bringing the application up."""

    url: str
    port: int
    migrated_from: int | None = None


@dataclass(frozen=True)
class DeploymentStatus:
    """Snapshot of the installation for ``status``."""

    state: DeploymentState
    version: str | None
    most_recent: str | None
    port: int | None
    origin: str | None
    running: bool | None

    @property
    def update_available(self) -> bool:
        """Return True when the ledger knows a newer tag than the active one."""
        return _is_newer(self.most_recent, self.version)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "version": self.version,
            "most_recent": self.most_recent,
            "update_available": self.update_available,
            "port": self.port,
            "origin": self.origin,
            "running": self.running,
        }


def _is_newer(candidate: str | None, active: str | None) -> bool:
    if not candidate:
        return False
    if not active:
        return True
    return version_sort_key(candidate) > version_sort_key(active)


def _default_secret() -> str:
    return secrets.token_urlsafe(32)


class LifecycleController:
    """Coordinate the environment store, ledger, archive reader and runtime."""

    def __init__(
        self,
        *,
        store: EnvironmentStore,
        ledger: ReleaseLedger,
        archive_reader: ArchiveReader,
        runtime: ContainerRuntime,
        certificates: CertificateProvisioner,
        image_cache_dir: Path,
        default_port: int = HTTPS_PORT,
        legacy_port: int = 80,
        public_host: str = "localhost",
        secret_factory: Callable[[], str] = _default_secret,
    ) -> None:
        """Wire the controller to its collaborators."""
        self.store = store
        self.ledger = ledger
        self.archive_reader = archive_reader
        self.runtime = runtime
        self.certificates = certificates
        self.image_cache_dir = image_cache_dir.expanduser()
        self.default_port = default_port
        self.legacy_port = legacy_port
        self.public_host = public_host
        self._secret_factory = secret_factory

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def state(self) -> DeploymentState:
        """Return the current deployment state."""
        if not self.store.exists():
            return DeploymentState.UNCONFIGURED
        if self.certificates.is_configured():
            return DeploymentState.READY
        return DeploymentState.CONFIGURED

    def active_version(self) -> str | None:
        """Return the committed version, or None when unset or unconfigured."""
        if not self.store.exists():
            return None
        return self.store.read_all().get(VERSION_FIELD) or None

    def status(self) -> DeploymentStatus:
        """Collect a status snapshot without mutating anything."""
        values = self.store.read_all() if self.store.exists() else {}
        port_raw = values.get(PORT_FIELD)
        return DeploymentStatus(
            state=self.state(),
            version=values.get(VERSION_FIELD) or None,
            most_recent=self._most_recent_or_none(),
            port=int(port_raw) if port_raw and port_raw.isdigit() else None,
            origin=values.get(ORIGIN_FIELD) or None,
            running=self._running_or_none(),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def bootstrap(self, origin: InstallOrigin = InstallOrigin.ONLINE) -> BootstrapResult:
        """Create the environment configuration with its initial values."""
        if self.store.exists():
            raise AlreadyConfiguredError(
                "The environment is already configured.",
                hint="Use `deployctl configure` to change individual settings.",
            )
        self.store.create(
            {
                PORT_FIELD: str(self.default_port),
                VERSION_FIELD: "",
                SECRET_FIELD: self._secret_factory(),
                ORIGIN_FIELD: origin.value,
            }
        )
        LOGGER.info("Bootstrapped environment (origin=%s)", origin.value)
        return BootstrapResult(port=self.default_port, origin=origin)

    def refresh(self, source: RefreshSource) -> RefreshReport:
        """Merge new tags into the ledger and compare with the active version."""
        if source.kind == "archive":
            if source.path is None:
                raise ValueError("An archive refresh requires a path.")
            refresh = self.ledger.refresh_from_archive(source.path)
        else:
            refresh = self.ledger.refresh_from_remote()
        active = self.active_version()
        return RefreshReport(
            refresh=refresh,
            active_version=active,
            update_available=self.store.exists() and _is_newer(refresh.most_recent, active),
        )

    def upgrade(self, target: UpgradeTarget) -> UpgradeResult:
        """Materialize and commit the version selected by *target*."""
        if not self.store.exists():
            raise NotConfiguredError(
                "Cannot upgrade before the environment is configured.",
                hint="Run `deployctl install` first.",
            )
        candidate = self._resolve(target)
        origin = self.store.read_all().get(ORIGIN_FIELD)
        return self._apply(target, candidate, origin=origin)

    def install(self, target: UpgradeTarget) -> InstallResult:
        """Install *target*, creating the environment record when it is missing.

        The version is resolved and its images materialized before the record
        is written, so a rejected or failed install leaves nothing behind.
        """
        candidate = self._resolve(target)
        if self.store.exists():
            origin = self.store.read_all().get(ORIGIN_FIELD)
            return InstallResult(
                bootstrapped=False,
                upgrade=self._apply(target, candidate, origin=origin),
            )
        install_origin = (
            InstallOrigin.ARCHIVE if target.kind == "archive" else InstallOrigin.ONLINE
        )
        result = self._apply(
            target,
            candidate,
            origin=install_origin.value,
            bootstrap_origin=install_origin,
        )
        return InstallResult(bootstrapped=True, upgrade=result)

    def up(self) -> UpResult:
        """Start the application once it is configured and has certificates."""
        if not self.store.exists():
            raise NotConfiguredError(
                "Cannot start before the environment is configured.",
                hint="Run `deployctl install` first.",
            )
        if not self.certificates.is_configured():
            raise CertificateMissingError(
                "TLS certificate and key must both be present before starting.",
                hint=(
                    "Run `deployctl configure --tls self-signed`, or provide both "
                    "--tls-cert and --tls-key."
                ),
            )
        port = self._read_port()
        migrated_from: int | None = None
        if port == self.legacy_port:
            LOGGER.info("Migrating legacy port %s to %s", port, self.default_port)
            self.store.update(PORT_FIELD, str(self.default_port))
            migrated_from, port = port, self.default_port
        self.runtime.start()
        return UpResult(url=self.address(port), port=port, migrated_from=migrated_from)

    def down(self) -> None:
        """Stop the application."""
        self.runtime.stop()

    def configure_port(self, port: int) -> int | None:
        """Set the external port and return the previous value."""
        if not 1 <= port <= 65535:
            raise ValueError(f"Port must be between 1 and 65535. Got {port}.")
        if not self.store.exists():
            raise NotConfiguredError(
                "Cannot configure the port before the environment exists.",
                hint="Run `deployctl install` first.",
            )
        previous = self._read_port()
        self.store.update(PORT_FIELD, str(port))
        return previous

    def address(self, port: int) -> str:
        """Return the public URL for *port*."""
        if port == HTTPS_PORT:
            return f"https://{self.public_host}"
        return f"https://{self.public_host}:{port}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _apply(
        self,
        target: UpgradeTarget,
        candidate: str,
        *,
        origin: str | None,
        bootstrap_origin: InstallOrigin | None = None,
    ) -> UpgradeResult:
        previous = self.active_version()
        LOGGER.info("Upgrading %s -> %s", previous or "(none)", candidate)

        loaded: tuple[Path, ...]
        cached: tuple[Path, ...] = ()
        if target.kind == "archive" and target.path is not None:
            loaded, cached = self._materialize_archive(target.path, candidate)
            source: Literal["pull", "cache", "archive"] = "archive"
        else:
            source, loaded = self._materialize_online(candidate, origin)

        if bootstrap_origin is not None:
            self.bootstrap(bootstrap_origin)
        try:
            self.ledger.checkout(candidate)
            self.store.update(VERSION_FIELD, candidate)
        except (DeployctlError, OSError, ValueError) as exc:
            raise PartialUpgradeError(candidate, exc) from exc

        tls_ready = self.certificates.is_configured()
        running = bool(self._running_or_none())
        advice: list[str] = []
        if tls_ready:
            advice.append("Ready to activate: run `deployctl up`.")
        else:
            advice.append(
                "Provision certificates with `deployctl configure --tls self-signed` "
                "before running `deployctl up`."
            )
        if running:
            advice.append("Services are running the previous version; re-run `deployctl up`.")
        return UpgradeResult(
            version=candidate,
            previous=previous,
            source=source,
            loaded=loaded,
            cached=cached,
            tls_ready=tls_ready,
            running=running,
            advice=tuple(advice),
        )

    def _resolve(self, target: UpgradeTarget) -> str:
        if target.kind == "latest":
            candidate = self.ledger.most_recent()
            if candidate is None:
                raise NoVersionsAvailableError(
                    "No release versions are known locally.",
                    hint="Run `deployctl update` (or `update --archive PATH`) first.",
                )
            return candidate
        if target.kind == "explicit":
            tag = target.tag or ""
            if not self.ledger.is_known(tag):
                raise UnknownVersionError(
                    f"Version '{tag}' is not a known release.",
                    hint="Run `deployctl update` to refresh the list, then `deployctl versions`.",
                )
            return tag
        if target.path is None:
            raise ValueError("An archive upgrade requires a path.")
        marker = self.archive_reader.read_version_marker(target.path)
        if not self.ledger.is_known(marker):
            raise UnknownVersionError(
                f"Archive version '{marker}' is not a known release.",
                hint=f"Run `deployctl update --archive {target.path}` first.",
            )
        return marker

    def _materialize_online(
        self, candidate: str, origin: str | None
    ) -> tuple[Literal["pull", "cache"], tuple[Path, ...]]:
        try:
            self.runtime.pull(candidate)
        except RuntimeCommandError as exc:
            cached = self._cached_blobs(candidate)
            if cached:
                LOGGER.info(
                    "Pull failed; loading %d cached image(s) for %s", len(cached), candidate
                )
                for blob in cached:
                    self.runtime.load(blob)
                return "cache", cached
            if origin == InstallOrigin.ARCHIVE.value:
                raise RequiresOfflineUpgradeError(
                    f"Unable to pull images for '{candidate}': {exc}",
                    hint=(
                        "This installation came from an archive; "
                        "use `deployctl upgrade --archive PATH`."
                    ),
                ) from exc
            raise PullFailedError(f"Unable to pull images for '{candidate}': {exc}") from exc
        return "pull", ()

    def _materialize_archive(
        self, archive_path: Path, candidate: str
    ) -> tuple[tuple[Path, ...], tuple[Path, ...]]:
        with self.archive_reader.scratch_directory("upgrade") as scratch:
            extracted = self.archive_reader.extract_all(archive_path, scratch)
            if extracted.version != candidate:
                raise CorruptArchiveError(
                    f"Archive marker changed during upgrade ({candidate} -> {extracted.version})."
                )
            for blob in extracted.blobs:
                LOGGER.debug("Loading image blob %s", blob.name)
                self.runtime.load(blob)
            cached = self._cache_blobs(candidate, extracted.blobs)
            loaded = tuple(Path(blob.name) for blob in extracted.blobs)
        return loaded, cached

    def _cache_dir(self, tag: str) -> Path:
        return self.image_cache_dir / tag.replace("/", "_")

    def _cached_blobs(self, tag: str) -> tuple[Path, ...]:
        directory = self._cache_dir(tag)
        if not directory.is_dir():
            return ()
        return tuple(sorted(item for item in directory.iterdir() if item.is_file()))

    def _cache_blobs(self, tag: str, blobs: tuple[Path, ...]) -> tuple[Path, ...]:
        directory = self._cache_dir(tag)
        stored: list[Path] = []
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for blob in blobs:
                destination = directory / blob.name
                if not destination.exists():
                    shutil.move(str(blob), destination)
                stored.append(destination)
        except OSError as exc:
            raise FilesystemError(f"Failed to cache images under {directory}: {exc}") from exc
        return tuple(stored)

    def _read_port(self) -> int:
        raw = self.store.read(PORT_FIELD)
        try:
            return int(raw)
        except ValueError:
            LOGGER.warning("Ignoring invalid %s=%r; using %s", PORT_FIELD, raw, self.default_port)
            return self.default_port

    def _most_recent_or_none(self) -> str | None:
        try:
            return self.ledger.most_recent()
        except GitError as exc:
            LOGGER.debug("Unable to read the release ledger: %s", exc)
            return None

    def _running_or_none(self) -> bool | None:
        try:
            return self.runtime.is_running()
        except RuntimeCommandError as exc:
            LOGGER.debug("Unable to query runtime state: %s", exc)
            return None


__all__ = [
    "BootstrapResult",
    "DeploymentState",
    "DeploymentStatus",
    "InstallOrigin",
    "InstallResult",
    "LifecycleController",
    "RefreshReport",
    "RefreshSource",
    "UpResult",
    "UpgradeResult",
    "UpgradeTarget",
]
