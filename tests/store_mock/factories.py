"""Factories for hardware and machine objects used across tests."""

from __future__ import annotations

from typing import Any

from tinkerbell_provider.models import (
    HardwareAffinity,
    Hardware,
    Resource,
    TinkerbellMachine,
)
from tinkerbell_provider.store import ResourceStore

DEFAULT_BOOTSTRAP_DATA = "#cloud-config\nprovider-id: PROVIDER_ID\n"


def make_hardware(
    name: str,
    *,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    disks: list[str] | None = None,
    ip: str | None = "10.0.0.10",
    instance_id: str | None = None,
) -> Hardware:
    """Hardware with one disk and one DHCP interface unless told otherwise."""
    interfaces: list[dict[str, Any]] = []
    if ip is not None:
        interfaces.append({"dhcp": {"mac": "3c:ec:ef:00:00:01", "ip": {"address": ip}}})

    return Hardware.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "spec": {
                "disks": [{"device": d} for d in (["/dev/sda"] if disks is None else disks)],
                "interfaces": interfaces,
                "metadata": {"instance": {"id": instance_id or f"instance-{name}"}},
            },
        }
    )


def make_machine(
    name: str,
    *,
    namespace: str = "default",
    affinity: dict[str, Any] | None = None,
    bootstrap_data: str | None = DEFAULT_BOOTSTRAP_DATA,
    version: str = "v1.28.3",
    **spec: Any,
) -> TinkerbellMachine:
    """Machine request; extra keyword arguments are spec fields by attribute name."""
    machine = TinkerbellMachine.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"version": version, "bootstrapData": bootstrap_data},
        }
    )
    if affinity is not None:
        machine.spec.hardware_affinity = HardwareAffinity.model_validate(affinity)
    for field_name, value in spec.items():
        setattr(machine.spec, field_name, value)
    return machine


def seed(store: ResourceStore, *objects: Resource) -> list[Resource]:
    """Create objects in the store, returning the stored copies."""
    return [store.create(obj) for obj in objects]
