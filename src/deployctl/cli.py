"""Typer-powered command line interface for ``deployctl``.

Every command builds on a shared :class:`RuntimeContext` created by the root
callback. Mutating commands hold the global advisory lock and every command
records one structured operation record. Failures raised by the lifecycle
controller are printed with their hint and mapped onto the documented exit
codes.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import ArchiveReader
from .config import AppConfig, ConfigError, load_config
from .errors import DeployctlError
from .exit_codes import ExitCode
from .lifecycle import (
    LifecycleController,
    RefreshSource,
    UpgradeResult,
    UpgradeTarget,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .providers.compose import ComposeRuntime
from .providers.git import GitProvider
from .providers.runtime import ContainerRuntime
from .state.environment import SECRET_FIELD, FileEnvironmentStore
from .state.ledger import ReleaseLedger
from .tls import (
    CertificateProvisioner,
    TLSPaths,
    TLSValidationReport,
    TLSValidationSeverity,
    TLSValidator,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to deployctl's YAML config file.",
)
ARCHIVE_OPTION = typer.Option(
    None,
    "--archive",
    dir_okay=False,
    help="Offline archive bundling the release ledger and image blobs.",
)
VERSION_ARGUMENT = typer.Argument(
    None,
    help="Release tag to install (defaults to the most recent known tag).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine readable JSON.",
)

SELF_SIGNED = "self-signed"

app = typer.Typer(
    add_completion=False,
    no_args_is_help=False,
    help=textwrap.dedent(
        """
        Deployment lifecycle manager for the application stack.

        Install and upgrade sanctioned releases online or from offline
        archives, provision TLS material, and start or stop the services.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    runtime: ContainerRuntime
    certificates: CertificateProvisioner
    validator: TLSValidator
    controller: LifecycleController


def _build_container_runtime(config: AppConfig) -> ContainerRuntime:
    return ComposeRuntime(
        compose_file=config.runtime.compose_file,
        env_file=config.env_file,
        project_name=config.runtime.project_name,
        docker_bin=config.runtime.docker_bin,
        utility_service=config.runtime.utility_service,
    )


def _build_git_provider(config: AppConfig) -> GitProvider:
    return GitProvider(repo_dir=config.install_dir, git_bin=config.ledger.git_bin)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=ExitCode.ARGUMENT) from exc

    container_runtime = _build_container_runtime(config)
    archive_reader = ArchiveReader(config.archive, config.scratch_dir)
    ledger = ReleaseLedger(
        _build_git_provider(config),
        remote=config.ledger.remote,
        archive_reader=archive_reader,
    )
    certificates = CertificateProvisioner(
        TLSPaths.from_config(config.tls),
        container_runtime,
        container_dir=config.tls.container_dir,
        days=config.tls.days,
    )
    controller = LifecycleController(
        store=FileEnvironmentStore(config.env_file),
        ledger=ledger,
        archive_reader=archive_reader,
        runtime=container_runtime,
        certificates=certificates,
        image_cache_dir=config.image_cache_dir,
        default_port=config.ports.default,
        legacy_port=config.ports.legacy,
        public_host=config.public_host,
    )
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        runtime=container_runtime,
        certificates=certificates,
        validator=TLSValidator(config.tls.warn_expiry_days),
        controller=controller,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the deployctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print diagnostic logging to the terminal.",
    ),
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    if version:
        console.print(f"deployctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.ARGUMENT,
    hint: str | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    if hint:
        console.print(f"[dim]{hint}[/dim]")
    op.error(message, errors=[message], rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _handle_failures(op: OperationScope) -> Iterator[None]:
    """Translate lifecycle failures into console output and exit codes.

    Non-fatal conditions (an environment that already exists) are reported as
    warnings and end the command successfully.
    """
    try:
        yield
    except DeployctlError as exc:
        if not exc.fatal:
            console.print(f"[yellow]{exc}[/yellow]")
            if exc.hint:
                console.print(f"[dim]{exc.hint}[/dim]")
            op.warning(str(exc), warnings=[str(exc)], changed=0)
            return
        _command_error(op, str(exc), rc=exc.exit_code, hint=exc.hint)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.FAILURE)


@contextmanager
def _mutation(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Hold the global lock and handle lifecycle failures."""
    with _handle_failures(op):
        with runtime.locks.mutate() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            yield


def _resolve_target(
    op: OperationScope,
    version: str | None,
    archive: Path | None,
) -> UpgradeTarget:
    if version and archive:
        _command_error(op, "Provide either a VERSION or --archive, not both.")
    if archive is not None:
        return UpgradeTarget.archive(archive)
    if version:
        return UpgradeTarget.explicit(version)
    return UpgradeTarget.latest()


def _render_upgrade(result: UpgradeResult) -> None:
    if result.previous == result.version:
        console.print(f"[green]Version '{result.version}' re-applied.[/green]")
    else:
        previous = result.previous or "(none)"
        console.print(
            f"[green]Upgraded {previous} -> {result.version}[/green] (images via {result.source})"
        )
    if result.loaded:
        console.print(f"Loaded {len(result.loaded)} image blob(s).")
    for line in result.advice:
        console.print(f"[bold]Next:[/bold] {line}")


def _format_tls_status(severity: TLSValidationSeverity) -> str:
    if severity is TLSValidationSeverity.OK:
        return "[green]OK[/green]"
    if severity is TLSValidationSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_tls_report(report: TLSValidationReport) -> None:
    table = Table("Scope", "Check", "Status", "Details")
    for finding in report.findings:
        table.add_row(
            finding.scope,
            finding.check,
            _format_tls_status(finding.severity),
            finding.message,
        )
    console.print(table)


# ----------------------------------------------------------------------
# Runtime control
# ----------------------------------------------------------------------
@app.command()
def up(ctx: typer.Context) -> None:
    """Start the application (requires configuration and TLS material)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("up", target={"kind": "deployment"}) as op:
        with _mutation(runtime, op):
            result = runtime.controller.up()
            if result.migrated_from is not None:
                op.add_step(
                    "port.migrate",
                    detail=f"{result.migrated_from} -> {result.port}",
                )
                console.print(
                    f"[yellow]Moved legacy port {result.migrated_from} to {result.port}.[/yellow]"
                )
            op.add_step("runtime.start")
            console.print(f"[green]Application started:[/green] {result.url}")
            op.success(
                "Application started.",
                changed=1 if result.migrated_from is None else 2,
                context={"url": result.url},
            )


@app.command()
def down(ctx: typer.Context) -> None:
    """Stop the application."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("down", target={"kind": "deployment"}) as op:
        with _mutation(runtime, op):
            runtime.controller.down()
            console.print("[green]Application stopped.[/green]")
            op.success("Application stopped.", changed=1)


@app.command()
def logs(
    ctx: typer.Context,
    service: str | None = typer.Argument(None, help="Only show logs for this service."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new log output."),
    tail: int | None = typer.Option(
        None,
        "--tail",
        min=0,
        help="Number of lines to show from the end of the logs.",
    ),
) -> None:
    """Show service logs."""
    runtime = _get_runtime(ctx)
    args = {"service": service, "follow": follow, "tail": tail}
    with runtime.logger.operation("logs", args=args, target={"kind": "deployment"}) as op:
        with _handle_failures(op):
            output = runtime.runtime.logs(follow=follow, tail=tail, service=service)
            if output:
                console.print(output, end="", markup=False, highlight=False)
            op.success("Displayed service logs.", changed=0)


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
def _show_configuration(runtime: RuntimeContext, op: OperationScope, json_output: bool) -> None:
    data = runtime.config.to_dict()
    if json_output:
        console.print_json(data=data)
        op.success("Rendered configuration as JSON.", changed=0)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, dict):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)

    store = runtime.controller.store
    if store.exists():
        for key, value in store.read_all().items():
            table.add_row(f"env.{key}", "********" if key == SECRET_FIELD else value)
    console.print(table)
    op.success("Rendered configuration table.", changed=0)


@app.command()
def configure(
    ctx: typer.Context,
    port: int | None = typer.Option(
        None,
        "--port",
        min=1,
        max=65535,
        help="External HTTPS port.",
    ),
    tls: str | None = typer.Option(
        None,
        "--tls",
        metavar=SELF_SIGNED,
        help="Generate a self-signed certificate and key.",
    ),
    tls_cert: Path | None = typer.Option(
        None,
        "--tls-cert",
        dir_okay=False,
        help="Install this certificate (PEM).",
    ),
    tls_key: Path | None = typer.Option(
        None,
        "--tls-key",
        dir_okay=False,
        help="Install this private key (PEM).",
    ),
    show: bool = typer.Option(
        False,
        "--show",
        help="Display the effective configuration and environment settings.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Change deployment settings or provision TLS material."""
    runtime = _get_runtime(ctx)
    args = {
        "port": port,
        "tls": tls,
        "tls_cert": tls_cert,
        "tls_key": tls_key,
        "show": show,
    }
    with runtime.logger.operation("configure", args=args, target={"kind": "config"}) as op:
        if show:
            _show_configuration(runtime, op, json_output)
            return
        if port is None and tls is None and tls_cert is None and tls_key is None:
            _command_error(
                op,
                "Nothing to configure.",
                hint="Pass --port, --tls self-signed, --tls-cert/--tls-key or --show.",
            )
        if tls is not None and tls != SELF_SIGNED:
            _command_error(op, f"Unsupported --tls mode '{tls}'; expected '{SELF_SIGNED}'.")
        if tls is not None and (tls_cert is not None or tls_key is not None):
            _command_error(op, "--tls self-signed cannot be combined with --tls-cert/--tls-key.")

        changed = 0
        with _mutation(runtime, op):
            if port is not None:
                previous = runtime.controller.configure_port(port)
                op.add_step("env.port", detail=f"{previous} -> {port}")
                console.print(f"[green]External port set to {port}.[/green]")
                changed += 1
            if tls == SELF_SIGNED:
                runtime.certificates.generate_self_signed(runtime.config.public_host)
                op.add_step("tls.self-signed", detail=runtime.config.public_host)
                console.print("[green]Generated a self-signed certificate.[/green]")
                changed += 2
            for kind, source in (("cert", tls_cert), ("key", tls_key)):
                if source is None:
                    continue
                destination = runtime.certificates.install_external(kind, source)
                op.add_step(f"tls.install.{kind}", detail=str(destination))
                console.print(f"[green]Installed {kind} at {destination}.[/green]")
                changed += 1

            if tls is not None or tls_cert is not None or tls_key is not None:
                report = runtime.validator.validate(runtime.certificates.paths)
                _render_tls_report(report)
                if report.status is not TLSValidationSeverity.OK:
                    messages = [
                        finding.message
                        for finding in report.findings
                        if finding.severity is not TLSValidationSeverity.OK
                    ]
                    op.warning(
                        "Configuration updated; TLS validation reported issues.",
                        warnings=messages,
                        changed=changed,
                        context=report.to_dict(),
                    )
                    return
            op.success("Configuration updated.", changed=changed)


# ----------------------------------------------------------------------
# Release lifecycle
# ----------------------------------------------------------------------
@app.command()
def update(
    ctx: typer.Context,
    archive: Path | None = ARCHIVE_OPTION,
) -> None:
    """Refresh the list of known release versions."""
    runtime = _get_runtime(ctx)
    source = RefreshSource.archive(archive) if archive is not None else RefreshSource.remote()
    with runtime.logger.operation(
        "update",
        args={"archive": archive},
        target={"kind": "ledger"},
    ) as op:
        with _mutation(runtime, op):
            report = runtime.controller.refresh(source)
            refresh = report.refresh
            op.add_step("ledger.refresh", detail=refresh.source)
            if refresh.added:
                joined = ", ".join(refresh.added)
                console.print(f"Learned {len(refresh.added)} new version(s): {joined}")
            else:
                console.print("No new versions.")
            console.print(f"Most recent version: {refresh.most_recent or '(none)'}")
            if report.update_available:
                console.print(
                    f"[bold]Update available:[/bold] {report.active_version or '(none)'}"
                    f" -> {refresh.most_recent}. Run `deployctl upgrade`."
                )
            op.success(
                "Release ledger refreshed.",
                changed=len(refresh.added),
                context={"added": list(refresh.added), "most_recent": refresh.most_recent},
            )


@app.command()
def upgrade(
    ctx: typer.Context,
    version: str | None = VERSION_ARGUMENT,
    archive: Path | None = ARCHIVE_OPTION,
) -> None:
    """Upgrade to VERSION, the most recent known version, or an archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "upgrade",
        args={"version": version, "archive": archive},
        target={"kind": "version", "version": version},
    ) as op:
        target = _resolve_target(op, version, archive)
        with _mutation(runtime, op):
            result = runtime.controller.upgrade(target)
            op.add_step("images.materialize", detail=result.source)
            op.add_step("version.commit", detail=result.version)
            _render_upgrade(result)
            op.success(
                f"Upgraded to {result.version}.",
                changed=1 + len(result.cached),
                context={"version": result.version, "previous": result.previous},
            )


@app.command()
def install(
    ctx: typer.Context,
    version: str | None = VERSION_ARGUMENT,
    archive: Path | None = ARCHIVE_OPTION,
) -> None:
    """Create the environment (if needed) and install a release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"version": version, "archive": archive},
        target={"kind": "version", "version": version},
    ) as op:
        target = _resolve_target(op, version, archive)
        with _mutation(runtime, op):
            result = runtime.controller.install(target)
            if result.bootstrapped:
                op.add_step("env.bootstrap")
                console.print(
                    "[green]Created environment configuration at "
                    f"{runtime.config.env_file}.[/green]"
                )
            else:
                op.add_step("env.bootstrap", status="skipped", detail="already configured")
            op.add_step("version.commit", detail=result.upgrade.version)
            _render_upgrade(result.upgrade)
            op.success(
                f"Installed {result.upgrade.version}.",
                changed=(2 if result.bootstrapped else 1) + len(result.upgrade.cached),
                context={"version": result.upgrade.version},
            )


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------
@app.command("version")
def version_command(ctx: typer.Context) -> None:
    """Show the active release version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("version", target={"kind": "version"}) as op:
        with _handle_failures(op):
            active = runtime.controller.active_version()
            console.print(f"deployctl {__version__}")
            console.print(f"Active version: {active or '(none)'}")
            op.success("Reported versions.", changed=0, context={"active": active})


@app.command()
def versions(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List known release versions, most recent first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("versions", args={"json": json_output}) as op:
        with _handle_failures(op):
            known = runtime.controller.ledger.all_known()
            active = runtime.controller.active_version()
            if json_output:
                console.print_json(data={"versions": known, "active": active})
                op.success("Rendered versions as JSON.", changed=0)
                return
            if not known:
                console.print("No versions known. Run `deployctl update`.")
                op.success("No versions known.", changed=0)
                return
            table = Table("Version", "Notes")
            for index, tag in enumerate(known):
                notes = []
                if index == 0:
                    notes.append("latest")
                if tag == active:
                    notes.append("[green]active[/green]")
                table.add_row(tag, ", ".join(notes))
            console.print(table)
            op.success("Listed versions.", changed=0, context={"count": len(known)})


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Summarise the deployment state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("status", args={"json": json_output}) as op:
        with _handle_failures(op):
            snapshot = runtime.controller.status()
            report = runtime.validator.validate(runtime.certificates.paths)
            if json_output:
                payload = snapshot.to_dict()
                payload["tls"] = report.to_dict()
                console.print_json(data=payload)
                op.success("Rendered status as JSON.", changed=0)
                return
            table = Table(show_header=False)
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("State", snapshot.state.value)
            table.add_row("Version", snapshot.version or "(none)")
            table.add_row("Most recent", snapshot.most_recent or "(none)")
            table.add_row("Update available", "yes" if snapshot.update_available else "no")
            table.add_row("Port", str(snapshot.port) if snapshot.port is not None else "-")
            table.add_row("Origin", snapshot.origin or "-")
            running = {True: "yes", False: "no", None: "unknown"}[snapshot.running]
            table.add_row("Running", running)
            table.add_row("TLS", _format_tls_status(report.status))
            console.print(table)
            op.success("Reported status.", changed=0, context=snapshot.to_dict())


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show this message and exit."""
    parent = ctx.parent or ctx
    console.print(parent.get_help())


def _terminate(signum: int, frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


def main() -> None:
    """Console script entry point."""
    # Unwind context managers (scratch directories, locks) on SIGTERM.
    signal.signal(signal.SIGTERM, _terminate)
    app()


__all__ = ["RuntimeContext", "app", "main"]
