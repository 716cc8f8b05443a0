"""TLS material provisioning and inspection for deployctl."""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Literal, Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import TLSConfig
from .errors import FilesystemError, RuntimeCommandError
from .providers.runtime import ContainerRuntime

LOGGER = logging.getLogger(__name__)

CERT_MODE = 0o644
KEY_MODE = 0o600

MaterialKind = Literal["cert", "key"]


@dataclass(frozen=True)
class TLSPaths:
    """Fixed host locations of the certificate and key."""

    cert: Path
    key: Path

    @classmethod
    def from_config(cls, config: TLSConfig) -> TLSPaths:
        """Build the paths from resolved configuration."""
        return cls(cert=config.cert.expanduser(), key=config.key.expanduser())


class CertificateProvisioner:
    """Place a certificate and key at the two fixed paths."""

    def __init__(
        self,
        paths: TLSPaths,
        runtime: ContainerRuntime,
        *,
        container_dir: str = "/certs",
        days: int = 3650,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Bind the provisioner to its target *paths* and the runtime used for generation."""
        self.paths = paths
        self.runtime = runtime
        self.container_dir = container_dir.rstrip("/") or "/"
        self.days = days
        self._environ = os.environ if environ is None else environ

    def is_configured(self) -> bool:
        """Return True only when both the certificate and the key exist."""
        return self.paths.cert.is_file() and self.paths.key.is_file()

    def generate_self_signed(self, common_name: str) -> None:
        """Generate a self-signed pair inside a utility container.

        The compose stack mounts the certificate directory at
        ``container_dir``; the generated files are then handed back to the
        invoking user.
        """
        for path in (self.paths.cert, self.paths.key):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FilesystemError(f"Failed to create {path.parent}: {exc}") from exc
        command = [
            "openssl",
            "req",
            "-x509",
            "-newkey",
            "rsa:4096",
            "-sha256",
            "-nodes",
            "-days",
            str(self.days),
            "-subj",
            f"/CN={common_name}",
            "-keyout",
            self._container_path(self.paths.key),
            "-out",
            self._container_path(self.paths.cert),
        ]
        LOGGER.debug("Generating self-signed certificate for %s", common_name)
        self.runtime.run_once(command)
        if not self.is_configured():
            raise RuntimeCommandError(
                "Certificate generation reported success but "
                f"{self.paths.cert} or {self.paths.key} is missing."
            )
        self._normalise_ownership()

    def install_external(self, kind: MaterialKind, source: Path) -> Path:
        """Copy an operator supplied certificate or key into place."""
        if kind == "cert":
            destination, mode = self.paths.cert, CERT_MODE
        elif kind == "key":
            destination, mode = self.paths.key, KEY_MODE
        else:
            raise ValueError(f"Unknown TLS material kind: {kind!r}")
        source = source.expanduser()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
            destination.chmod(mode)
        except OSError as exc:
            raise FilesystemError(f"Failed to install {kind} from {source}: {exc}") from exc
        return destination

    def _container_path(self, host_path: Path) -> str:
        return f"{self.container_dir.rstrip('/')}/{host_path.name}"

    def _normalise_ownership(self) -> None:
        uid = _int_or(self._environ.get("SUDO_UID"), os.getuid())
        gid = _int_or(self._environ.get("SUDO_GID"), os.getgid())
        for path in (self.paths.cert, self.paths.key):
            try:
                os.chown(path, uid, gid)
            except OSError as exc:
                raise FilesystemError(
                    f"Failed to set ownership of {path} to {uid}:{gid}: {exc}"
                ) from exc


def _int_or(raw: str | None, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate validation results for the installed TLS pair."""

    paths: TLSPaths
    findings: tuple[TLSValidationFinding, ...]
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when the report includes warning findings."""
        return any(f.severity is TLSValidationSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the overall status derived from the findings."""
        if self.has_errors:
            return TLSValidationSeverity.ERROR
        if self.has_warnings:
            return TLSValidationSeverity.WARNING
        return TLSValidationSeverity.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "certificate": str(self.paths.cert),
            "key": str(self.paths.key),
            "status": self.status.value,
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class TLSValidator:
    """Inspect the installed pair: presence, parsing, key match and expiry."""

    def __init__(self, warn_expiry_days: int = 30) -> None:
        """Capture the expiry warning threshold."""
        self._warn_expiry_days = warn_expiry_days

    def validate(self, paths: TLSPaths, *, now: datetime | None = None) -> TLSValidationReport:
        """Validate *paths* and return a structured report."""
        now = now or datetime.now(UTC)
        findings: list[TLSValidationFinding] = []

        cert_exists = _check_file(paths.cert, "certificate", findings)
        key_exists = _check_file(paths.key, "key", findings)

        cert_obj: x509.Certificate | None = None
        key_obj: PrivateKeyProtocol | None = None
        not_after: datetime | None = None

        if cert_exists:
            try:
                cert_obj = _load_certificate(paths.cert)
            except ValueError as exc:
                findings.append(
                    _finding(
                        "certificate",
                        "parse",
                        "error",
                        f"Failed to parse certificate: {exc}",
                        paths.cert,
                    )
                )
            else:
                findings.append(
                    _finding(
                        "certificate",
                        "parse",
                        "ok",
                        f"Loaded certificate (serial {cert_obj.serial_number})",
                        paths.cert,
                    )
                )
        if key_exists:
            try:
                key_obj = _load_private_key(paths.key)
            except (ValueError, TypeError) as exc:
                findings.append(
                    _finding(
                        "key", "parse", "error", f"Failed to parse private key: {exc}", paths.key
                    )
                )
            else:
                findings.append(
                    _finding("key", "parse", "ok", "Loaded private key.", paths.key)
                )

        if cert_obj is not None and key_obj is not None:
            if _public_keys_match(cert_obj, key_obj):
                findings.append(
                    _finding("certificate", "match", "ok", "Certificate and key match.", paths.cert)
                )
            else:
                findings.append(
                    _finding(
                        "certificate",
                        "match",
                        "error",
                        "Certificate does not match the installed key.",
                        paths.cert,
                    )
                )

        if cert_obj is not None:
            not_after = cert_obj.not_valid_after_utc
            if not_after <= now:
                findings.append(
                    _finding(
                        "certificate",
                        "expiry",
                        "error",
                        f"Certificate expired on {not_after.isoformat()}",
                        paths.cert,
                    )
                )
            else:
                days_remaining = (not_after - now).days
                if days_remaining <= self._warn_expiry_days:
                    findings.append(
                        _finding(
                            "certificate",
                            "expiry",
                            "warning",
                            "Certificate expires soon "
                            f"({not_after.isoformat()}, {days_remaining} day(s) remaining)",
                            paths.cert,
                        )
                    )
                else:
                    findings.append(
                        _finding(
                            "certificate",
                            "expiry",
                            "ok",
                            f"Certificate valid until {not_after.isoformat()}",
                            paths.cert,
                        )
                    )

        return TLSValidationReport(paths=paths, findings=tuple(findings), not_valid_after=not_after)


def _finding(
    scope: str,
    check: str,
    severity: str,
    message: str,
    path: Path,
) -> TLSValidationFinding:
    return TLSValidationFinding(
        scope=scope,
        check=check,
        severity=TLSValidationSeverity(severity),
        message=message,
        path=path,
    )


def _check_file(path: Path, scope: str, findings: list[TLSValidationFinding]) -> bool:
    if not path.exists():
        findings.append(_finding(scope, "exists", "error", "File does not exist.", path))
        return False
    if not path.is_file():
        findings.append(_finding(scope, "type", "error", "Path is not a regular file.", path))
        return False
    if not os.access(path, os.R_OK):
        findings.append(
            _finding(scope, "readable", "error", "File is not readable by the current user.", path)
        )
        return False
    findings.append(_finding(scope, "exists", "ok", "File present and readable.", path))
    return True


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CertificateProvisioner",
    "TLSPaths",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "TLSValidator",
]
