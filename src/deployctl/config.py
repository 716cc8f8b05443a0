"""Configuration loader for deployctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/deployctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEPLOYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEPLOYCTL_PORTS__DEFAULT=8443
    export DEPLOYCTL_LEDGER__REMOTE=upstream

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Several paths default relative to ``install_dir`` when left
unset. The resulting configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "DEPLOYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """External port defaults."""

    default: int = 443
    legacy: int = 80

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"default": self.default, "legacy": self.legacy}


@dataclass(frozen=True)
class LedgerConfig:
    """Release ledger (git checkout) settings."""

    remote: str = "origin"
    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"remote": self.remote, "git_bin": self.git_bin}


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime (docker compose) settings."""

    compose_file: Path
    docker_bin: str = "docker"
    project_name: str = "deployctl"
    utility_service: str = "utility"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "compose_file": str(self.compose_file),
            "docker_bin": self.docker_bin,
            "project_name": self.project_name,
            "utility_service": self.utility_service,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Fixed TLS artifact locations and generation settings."""

    cert: Path
    key: Path
    container_dir: str = "/certs"
    warn_expiry_days: int = 30
    days: int = 3650

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cert": str(self.cert),
            "key": str(self.key),
            "container_dir": self.container_dir,
            "warn_expiry_days": self.warn_expiry_days,
            "days": self.days,
        }


@dataclass(frozen=True)
class ArchiveConfig:
    """Offline archive layout."""

    root: str = "release"
    marker: str = "VERSION"
    ledger: str = "ledger"
    images: str = "images"
    tar_bin: str = "tar"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": self.root,
            "marker": self.marker,
            "ledger": self.ledger,
            "images": self.images,
            "tar_bin": self.tar_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for deployctl."""

    config_file: Path
    install_dir: Path
    env_file: Path
    image_cache_dir: Path
    state_dir: Path
    scratch_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    public_host: str
    ports: PortsConfig
    ledger: LedgerConfig
    runtime: RuntimeConfig
    tls: TLSConfig
    archive: ArchiveConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "env_file": str(self.env_file),
            "image_cache_dir": str(self.image_cache_dir),
            "state_dir": str(self.state_dir),
            "scratch_dir": str(self.scratch_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "public_host": self.public_host,
            "ports": self.ports.to_dict(),
            "ledger": self.ledger.to_dict(),
            "runtime": self.runtime.to_dict(),
            "tls": self.tls.to_dict(),
            "archive": self.archive.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/deployctl/config.yml",
    "install_dir": "/opt/deployctl",
    "env_file": None,  # derived from install_dir when absent
    "image_cache_dir": None,  # derived from install_dir when absent
    "state_dir": "/var/lib/deployctl",
    "scratch_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/deployctl",
    "runtime_dir": "/run/deployctl",
    "lock_timeout": 30.0,
    "public_host": "localhost",
    "ports": {
        "default": 443,
        "legacy": 80,
    },
    "ledger": {
        "remote": "origin",
        "git_bin": "git",
    },
    "runtime": {
        "compose_file": None,  # derived from install_dir when absent
        "docker_bin": "docker",
        "project_name": "deployctl",
        "utility_service": "utility",
    },
    "tls": {
        "cert": None,
        "key": None,
        "container_dir": "/certs",
        "warn_expiry_days": 30,
        "days": 3650,
    },
    "archive": {
        "root": "release",
        "marker": "VERSION",
        "ledger": "ledger",
        "images": "images",
        "tar_bin": "tar",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"default", "legacy"},
    "ledger": {"remote", "git_bin"},
    "runtime": {"compose_file", "docker_bin", "project_name", "utility_service"},
    "tls": {"cert", "key", "container_dir", "warn_expiry_days", "days"},
    "archive": {"root", "marker", "ledger", "images", "tar_bin"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports = _as_dict(raw.get("ports"), "ports")
    for field in ("default", "legacy"):
        value = ports.get(field)
        if value is not None:
            port = _expect_int(value, f"ports.{field}", default=0)
            if not 1 <= port <= 65535:
                raise ConfigError(f"ports.{field} must be between 1 and 65535. Got {port}.")

    tls = _as_dict(raw.get("tls"), "tls")
    warn_value = tls.get("warn_expiry_days")
    if warn_value is not None:
        if _expect_int(warn_value, "tls.warn_expiry_days", default=30) < 0:
            raise ConfigError("tls.warn_expiry_days must be non-negative.")
    days_value = tls.get("days")
    if days_value is not None:
        if _expect_int(days_value, "tls.days", default=3650) <= 0:
            raise ConfigError("tls.days must be greater than zero.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    env_file = _optional_path(raw.get("env_file")) or install_dir / ".env"
    image_cache_dir = _optional_path(raw.get("image_cache_dir")) or install_dir / "images"
    scratch_dir = _optional_path(raw.get("scratch_dir")) or state_dir / "scratch"

    public_host = str(raw.get("public_host") or "localhost").strip()
    if not public_host:
        raise ConfigError("public_host must be a non-empty string.")

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        default=_expect_int(ports_mapping.get("default"), "ports.default", default=443),
        legacy=_expect_int(ports_mapping.get("legacy"), "ports.legacy", default=80),
    )

    ledger_mapping = _as_dict(raw.get("ledger"), "ledger")
    ledger = LedgerConfig(
        remote=str(ledger_mapping.get("remote", "origin")),
        git_bin=str(ledger_mapping.get("git_bin", "git")),
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(
        compose_file=(
            _optional_path(runtime_mapping.get("compose_file"))
            or install_dir / "docker-compose.yml"
        ),
        docker_bin=str(runtime_mapping.get("docker_bin", "docker")),
        project_name=str(runtime_mapping.get("project_name", "deployctl")),
        utility_service=str(runtime_mapping.get("utility_service", "utility")),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    certs_dir = install_dir / "certs"
    tls = TLSConfig(
        cert=_optional_path(tls_mapping.get("cert")) or certs_dir / "cert.pem",
        key=_optional_path(tls_mapping.get("key")) or certs_dir / "key.pem",
        container_dir=str(tls_mapping.get("container_dir", "/certs")),
        warn_expiry_days=_expect_int(
            tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
        ),
        days=_expect_int(tls_mapping.get("days"), "tls.days", default=3650),
    )

    archive_mapping = _as_dict(raw.get("archive"), "archive")
    archive = ArchiveConfig(
        root=str(archive_mapping.get("root", "release")),
        marker=str(archive_mapping.get("marker", "VERSION")),
        ledger=str(archive_mapping.get("ledger", "ledger")),
        images=str(archive_mapping.get("images", "images")),
        tar_bin=str(archive_mapping.get("tar_bin", "tar")),
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        env_file=env_file,
        image_cache_dir=image_cache_dir,
        state_dir=state_dir,
        scratch_dir=scratch_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        public_host=public_host,
        ports=ports,
        ledger=ledger,
        runtime=runtime,
        tls=tls,
        archive=archive,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``DEPLOYCTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        node = overrides
        for segment in segments[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with a scalar value.")
            node = child
        node[segments[-1]] = _parse_env_value(value)
    return overrides


def _parse_env_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(current, _as_dict(value, key))
        else:
            target[key] = value


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path. Got {value!r}.")


def _optional_path(value: object) -> Path | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError(f"{label} must be an integer. Got {value!r}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError:
            numeric = None
    if numeric is None:
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Section {label} must be a mapping. Got {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"Section {label} must use string keys.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ArchiveConfig",
    "ConfigError",
    "LedgerConfig",
    "PortsConfig",
    "RuntimeConfig",
    "TLSConfig",
    "load_config",
]
