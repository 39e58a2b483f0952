"""Command line entry point for the Azure machine actuator.

Each command runs exactly one reconciliation pass for one machine and
exits. Retrying is left to the caller (a controller loop or a job
scheduler), which reads the exit code:

- 0: pass completed
- 1: retryable failure (provider error, resource not ready yet)
- 2: permanent failure (bad configuration, forbidden change)
- 3: security violation (secret-based credential configured)

SECRETLESS ARCHITECTURE:
Azure calls authenticate with a managed identity only. See security.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

import click

from .config import Config
from .errors import ActuatorError, ConfigurationError
from .manifest import ManifestLoadError, dump_machine, load_cluster, load_machine, read_text_limited
from .reconciler import MachineReconciler
from .scope import MachineScope
from .security import (
    SecretlessViolationError,
    get_managed_identity_credential,
    log_machine_audit_event,
)

EXIT_OK = 0
EXIT_RETRYABLE = 1
EXIT_PERMANENT = 2
EXIT_SECURITY = 3

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

logger = logging.getLogger(__name__)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stderr.

    Stdout is reserved for command results.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Reduce noise from the SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def build_scope(
    config: Config,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig_path: Path | None,
) -> MachineScope:
    """Load the machine and cluster manifests into a scope.

    Raises:
        ManifestLoadError: If a manifest or the kubeconfig cannot be loaded,
            or the cluster manifest names a cluster other than CLUSTER_NAME.
    """
    admin_kubeconfig = None
    if admin_kubeconfig_path is not None:
        admin_kubeconfig = read_text_limited(admin_kubeconfig_path)

    machine = load_machine(machine_path)
    cluster, cluster_config = load_cluster(
        cluster_path,
        subscription_id=config.subscription_id,
        resource_group=config.resource_group,
        location=config.location,
        admin_kubeconfig=admin_kubeconfig,
    )
    if cluster.name != config.cluster_name:
        raise ManifestLoadError(
            f"Cluster manifest {cluster_path} names cluster {cluster.name!r}, "
            f"but CLUSTER_NAME is {config.cluster_name!r}"
        )

    return MachineScope(machine=machine, cluster=cluster, cluster_config=cluster_config)


async def reconcile(action: str, reconciler: MachineReconciler) -> bool | None:
    """Run one lifecycle operation; returns the readiness for ``exists``."""
    match action:
        case "create":
            await reconciler.create()
        case "update":
            await reconciler.update()
        case "delete":
            await reconciler.delete()
        case "exists":
            return await reconciler.exists()
        case _:
            raise ConfigurationError(f"Unknown action: {action}")
    return None


def run_pass(
    action: str,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig_path: Path | None,
    output: Path | None,
) -> int:
    """Run a single reconciliation pass and map the outcome to an exit code."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_PERMANENT

    setup_logging(config.log_level)

    try:
        credential = get_managed_identity_credential(config.client_id)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY

    try:
        scope = build_scope(config, machine_path, cluster_path, admin_kubeconfig_path)
    except ManifestLoadError as e:
        logger.error("Manifest loading failed", extra={"error": str(e)})
        return EXIT_PERMANENT

    logger.info(
        "Starting machine reconciliation",
        extra={
            "action": action,
            "machine": scope.name,
            "cluster": scope.cluster.name,
            "resource_group": scope.cluster.resource_group,
        },
    )

    try:
        reconciler = MachineReconciler.from_azure(scope, config, credential)
        ready = asyncio.run(reconcile(action, reconciler))
    except ActuatorError as e:
        log_machine_audit_event(action, scope.name, scope.cluster.name, "failure")
        logger.error(
            "Machine reconciliation failed",
            extra={
                "action": action,
                "machine": scope.name,
                "error": str(e),
                "error_type": type(e).__name__,
                "retryable": e.retryable,
            },
        )
        return EXIT_RETRYABLE if e.retryable else EXIT_PERMANENT
    except Exception as e:
        log_machine_audit_event(action, scope.name, scope.cluster.name, "failure")
        logger.exception(
            "Unexpected error during machine reconciliation",
            extra={"action": action, "machine": scope.name, "error": str(e)},
        )
        return EXIT_RETRYABLE

    log_machine_audit_event(action, scope.name, scope.cluster.name, "success")

    if ready is not None:
        click.echo("true" if ready else "false")

    if output is not None:
        output.write_text(dump_machine(scope.machine), encoding="utf-8")
        logger.info("Wrote machine manifest", extra={"path": str(output)})

    return EXIT_OK


# =============================================================================
# CLI
# =============================================================================


def _pass_options(func):
    """Options shared by every lifecycle command."""
    func = click.option(
        "--output",
        "-o",
        type=click.Path(dir_okay=False, path_type=Path),
        help="Write the updated machine manifest (status, providerID) here",
    )(func)
    func = click.option(
        "--admin-kubeconfig",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        envvar="ADMIN_KUBECONFIG",
        help="Admin kubeconfig of the workload cluster",
    )(func)
    func = click.option(
        "--cluster",
        "-c",
        "cluster_path",
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Cluster manifest (YAML)",
    )(func)
    func = click.option(
        "--machine",
        "-m",
        "machine_path",
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Machine manifest (YAML)",
    )(func)
    return func


@click.group()
def cli() -> None:
    """Azure machine actuator: one reconciliation pass per invocation.

    \b
    Examples:
        azure-machine-actuator create -m machine.yaml -c cluster.yaml
        azure-machine-actuator exists -m machine.yaml -c cluster.yaml -o machine.yaml
        azure-machine-actuator delete -m machine.yaml -c cluster.yaml
    """
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))


@cli.command()
@_pass_options
@click.pass_context
def create(
    ctx: click.Context,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig: Path | None,
    output: Path | None,
) -> None:
    """Create the machine's network interface, VM and startup extension."""
    ctx.exit(run_pass("create", machine_path, cluster_path, admin_kubeconfig, output))


@cli.command()
@_pass_options
@click.pass_context
def exists(
    ctx: click.Context,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig: Path | None,
    output: Path | None,
) -> None:
    """Print whether the machine exists and is ready (true/false)."""
    ctx.exit(run_pass("exists", machine_path, cluster_path, admin_kubeconfig, output))


@cli.command()
@_pass_options
@click.pass_context
def update(
    ctx: click.Context,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig: Path | None,
    output: Path | None,
) -> None:
    """Reject forbidden changes to an existing machine."""
    ctx.exit(run_pass("update", machine_path, cluster_path, admin_kubeconfig, output))


@cli.command()
@_pass_options
@click.pass_context
def delete(
    ctx: click.Context,
    machine_path: Path,
    cluster_path: Path,
    admin_kubeconfig: Path | None,
    output: Path | None,
) -> None:
    """Delete the machine's VM, then its network interface."""
    ctx.exit(run_pass("delete", machine_path, cluster_path, admin_kubeconfig, output))


def run() -> None:
    """Entry point for the actuator CLI."""
    cli()


if __name__ == "__main__":
    run()
