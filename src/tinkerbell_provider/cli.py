"""Tinkerbell machine provider CLI (capt).

Runs the provisioning core offline against YAML manifests, which is how
allocations and rendered templates are previewed before pointing the
provider at a live store.

Usage:
    capt reconcile inventory.yaml                 # Reconcile every machine
    capt reconcile inventory.yaml -m default/w-0  # Reconcile one machine
    capt allocate inventory.yaml -m default/w-0   # Show ranked hardware candidates
    capt partition /dev/nvme0n1                   # First partition name
    capt image-url --kubernetes-version v1.28.3   # Resolve an image URL
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from .allocation import HardwareAllocator
from .config import Config, ConfigurationError
from .errors import ErrorKind, ProvisioningError
from .main import setup_logging
from .manifests import ManifestLoadError, dump_manifests, load_store
from .models import DEFAULT_NAMESPACE, Hardware, TinkerbellMachine, Template, Workflow
from .reconciler import MachineReconciler
from .store import InMemoryStore
from .templates import first_partition, image_url

logger = logging.getLogger(__name__)

# Passes per machine before giving up on optimistic-concurrency conflicts
DEFAULT_MAX_PASSES = 3
MAX_PASSES_LIMIT = 10


def parse_object_ref(value: str) -> tuple[str, str]:
    """Split ``namespace/name``; a bare name lives in the default namespace."""
    namespace, _, name = value.rpartition("/")
    if not name:
        raise click.BadParameter(f"expected NAMESPACE/NAME or NAME, got {value!r}")
    return (namespace or DEFAULT_NAMESPACE, name)


def load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def open_store(manifests: tuple[Path, ...]) -> InMemoryStore:
    try:
        return load_store(manifests)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e


def reconcile_machine(
    reconciler: MachineReconciler, namespace: str, name: str, max_passes: int
) -> ProvisioningError | None:
    """Invoke passes for one machine, re-running only after conflicts.

    Returns the last error, or None once a pass succeeds.
    """
    error: ProvisioningError | None = None
    for attempt in range(1, max_passes + 1):
        try:
            reconciler.reconcile(namespace, name)
            return None
        except ProvisioningError as e:
            error = e
            logger.warning(
                "Reconcile pass failed",
                extra={
                    "machine": f"{namespace}/{name}",
                    "attempt": attempt,
                    "error": str(e),
                    "error_kind": e.kind.value,
                },
            )
            if e.kind is not ErrorKind.CONFLICT:
                break
    return error


@click.group()
@click.version_option(version="0.1.0", prog_name="capt")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for JSON logs on stderr",
)
def cli(log_level: str) -> None:
    """Tinkerbell machine provider CLI (capt).

    Allocates hardware to machines and renders their provisioning
    templates and workflows from YAML manifests.
    """
    setup_logging(log_level)


@cli.command()
@click.argument(
    "manifests", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path)
)
@click.option("--machine", "-m", "machines", multiple=True, help="NAMESPACE/NAME to reconcile")
@click.option(
    "--max-passes",
    default=DEFAULT_MAX_PASSES,
    show_default=True,
    type=click.IntRange(1, MAX_PASSES_LIMIT),
    help="Passes per machine when a claim conflicts",
)
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write result here"
)
def reconcile(
    manifests: tuple[Path, ...],
    machines: tuple[str, ...],
    max_passes: int,
    output: Path | None,
) -> None:
    """Reconcile machines and print the resulting objects as YAML."""
    config = load_config()
    store = open_store(manifests)
    reconciler = MachineReconciler(store, config)

    if machines:
        refs = [parse_object_ref(m) for m in machines]
    else:
        refs = [m.key for m in store.list(TinkerbellMachine)]

    failures: list[str] = []
    for namespace, name in refs:
        error = reconcile_machine(reconciler, namespace, name, max_passes)
        if error is not None:
            failures.append(f"{namespace}/{name}: [{error.kind.value}] {error}")

    resources = [
        *store.list(Hardware),
        *store.list(TinkerbellMachine),
        *store.list(Template),
        *store.list(Workflow),
    ]
    rendered = dump_manifests(resources)
    if output:
        output.write_text(rendered, encoding="utf-8")
    else:
        click.echo(rendered, nl=False)

    if failures:
        for failure in failures:
            click.secho(failure, fg="red", err=True)
        raise click.ClickException(f"{len(failures)} machine(s) failed to reconcile")


@cli.command()
@click.argument(
    "manifests", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path)
)
@click.option("--machine", "-m", "machine_ref", required=True, help="NAMESPACE/NAME")
def allocate(manifests: tuple[Path, ...], machine_ref: str) -> None:
    """Show the hardware a machine would get, best candidate first."""
    namespace, name = parse_object_ref(machine_ref)
    store = open_store(manifests)
    allocator = HardwareAllocator(store)

    try:
        machine = store.get(TinkerbellMachine, namespace, name)
        assigned = allocator.assigned_hardware(machine)
        if assigned is not None:
            click.echo(f"{assigned.namespace}/{assigned.name}\t(assigned)")
            return
        ranked = allocator.rank(machine)
    except ProvisioningError as e:
        raise click.ClickException(f"[{e.kind.value}] {e}") from e

    if not ranked:
        raise click.ClickException(f"no hardware available for machine {namespace}/{name}")
    for candidate in ranked:
        hw = candidate.hardware
        click.echo(f"{hw.namespace}/{hw.name}\t{candidate.score}")


@cli.command()
@click.argument("device")
def partition(device: str) -> None:
    """Print the first partition of DEVICE (e.g. /dev/nvme0n1 -> /dev/nvme0n1p1)."""
    click.echo(first_partition(device))


@cli.command("image-url")
@click.option("--format", "image_format", help="Image lookup format (Go-style {{.Field}})")
@click.option("--base-registry", help="Value for {{.BaseRegistry}}")
@click.option("--os-distro", help="Value for {{.OSDistro}} (lower-cased)")
@click.option("--os-version", help="Value for {{.OSVersion}} (dots removed)")
@click.option("--kubernetes-version", default="", help="Value for {{.KubernetesVersion}}")
def image_url_command(
    image_format: str | None,
    base_registry: str | None,
    os_distro: str | None,
    os_version: str | None,
    kubernetes_version: str,
) -> None:
    """Resolve an image URL; unset options fall back to the configured defaults."""
    defaults = load_config().image_lookup
    try:
        url = image_url(
            image_format or defaults.format,
            base_registry or defaults.base_registry,
            os_distro or defaults.os_distro,
            os_version or defaults.os_version,
            kubernetes_version,
        )
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e
    click.echo(url)
