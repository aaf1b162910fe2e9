"""Operations on a machine's hardware once it has been selected.

OwnershipClaimer   - owner labels + finalizer, written with a conditioned update
ProvisioningDataInjector - bootstrap config with the provider ID, pushed to userData
StatusReporter     - machine address derived from the hardware's network config

Claims are the only contended write in the system. Two machines that picked
the same unclaimed unit both issue an update conditioned on the version they
read; exactly one wins and the other gets ConflictError. The loser's next pass
no longer sees the unit as a candidate because it now carries owner labels.
"""

from __future__ import annotations

import logging

from .errors import NoIPError
from .models import (
    HARDWARE_OWNER_NAME_LABEL,
    HARDWARE_OWNER_NAMESPACE_LABEL,
    MACHINE_FINALIZER,
    NODE_INTERNAL_IP,
    Hardware,
    MachineAddress,
    TinkerbellMachine,
)
from .store import ResourceStore

logger = logging.getLogger(__name__)

# Substituted in the bootstrap config with the machine's provider ID
PROVIDER_ID_PLACEHOLDER = "PROVIDER_ID"

PROVIDER_ID_SCHEME = "tinkerbell"


def provider_id_for(hardware: Hardware) -> str:
    return f"{PROVIDER_ID_SCHEME}://{hardware.namespace}/{hardware.name}"


def hardware_ip(hardware: Hardware) -> str:
    """Return the internal IP of the hardware's first DHCP-addressed interface.

    Raises:
        NoIPError: If no interface carries an IP address.
    """
    for interface in hardware.spec.interfaces:
        if interface.dhcp and interface.dhcp.ip and interface.dhcp.ip.address:
            return interface.dhcp.ip.address
    raise NoIPError(
        f"hardware {hardware.namespace}/{hardware.name} has no interface with an IP address",
        hardware=f"{hardware.namespace}/{hardware.name}",
    )


class OwnershipClaimer:
    """Marks hardware as exclusively owned by a machine, and releases it."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    @staticmethod
    def is_claimed_by(hardware: Hardware, machine: TinkerbellMachine) -> bool:
        labels = hardware.metadata.labels
        return (
            labels.get(HARDWARE_OWNER_NAME_LABEL) == machine.name
            and labels.get(HARDWARE_OWNER_NAMESPACE_LABEL) == machine.namespace
        )

    def claim(self, hardware: Hardware, machine: TinkerbellMachine) -> Hardware:
        """Take ownership of ``hardware`` for ``machine``.

        The write is conditioned on the resource version ``hardware`` was read
        at. Already-claimed hardware with the finalizer in place is returned
        without a write.

        Raises:
            ConflictError: If the hardware changed since it was read; the
                caller must restart allocation.
            StoreError: On any other store failure.
        """
        if self.is_claimed_by(hardware, machine) and MACHINE_FINALIZER in hardware.metadata.finalizers:
            return hardware

        claimed = hardware.model_copy(deep=True)
        claimed.metadata.labels[HARDWARE_OWNER_NAME_LABEL] = machine.name
        claimed.metadata.labels[HARDWARE_OWNER_NAMESPACE_LABEL] = machine.namespace
        # Released before the machine object goes away
        claimed.add_finalizer(MACHINE_FINALIZER)

        claimed = self._store.update(claimed)
        logger.info(
            "Claimed hardware",
            extra={
                "machine": f"{machine.namespace}/{machine.name}",
                "hardware": f"{hardware.namespace}/{hardware.name}",
                "resource_version": claimed.metadata.resource_version,
            },
        )
        return claimed

    def release(self, hardware: Hardware, machine: TinkerbellMachine) -> Hardware:
        """Drop the machine's owner labels and finalizer from ``hardware``.

        Hardware owned by a different machine is left untouched.
        """
        if not self.is_claimed_by(hardware, machine):
            return hardware

        released = hardware.model_copy(deep=True)
        released.metadata.labels.pop(HARDWARE_OWNER_NAME_LABEL, None)
        released.metadata.labels.pop(HARDWARE_OWNER_NAMESPACE_LABEL, None)
        released.remove_finalizer(MACHINE_FINALIZER)

        released = self._store.update(released)
        logger.info(
            "Released hardware",
            extra={
                "machine": f"{machine.namespace}/{machine.name}",
                "hardware": f"{hardware.namespace}/{hardware.name}",
            },
        )
        return released


class ProvisioningDataInjector:
    """Pushes the machine's bootstrap config onto the hardware's userData."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    @staticmethod
    def render_user_data(machine: TinkerbellMachine, provider_id: str) -> str:
        return (machine.spec.bootstrap_data or "").replace(PROVIDER_ID_PLACEHOLDER, provider_id)

    def inject(self, hardware: Hardware, machine: TinkerbellMachine, provider_id: str) -> Hardware:
        """Write userData only when it differs from what is stored."""
        user_data = self.render_user_data(machine, provider_id)
        if hardware.spec.user_data == user_data:
            return hardware

        updated = hardware.model_copy(deep=True)
        updated.spec.user_data = user_data
        updated = self._store.patch(updated)
        logger.info(
            "Updated hardware user data",
            extra={
                "hardware": f"{hardware.namespace}/{hardware.name}",
                "provider_id": provider_id,
            },
        )
        return updated


class StatusReporter:
    """Publishes the machine's address, derived from its hardware."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def report(self, hardware: Hardware | None, machine: TinkerbellMachine) -> TinkerbellMachine:
        """Set the machine's sole address to the hardware IP and persist it.

        Raises:
            NotFoundError: If ``hardware`` is None and the machine's
                hardwareName does not resolve.
            NoIPError: If the hardware has no usable IP.
        """
        if hardware is None:
            hardware = self._store.get(Hardware, machine.namespace, machine.spec.hardware_name)

        ip = hardware_ip(hardware)
        machine.status.addresses = [MachineAddress(type=NODE_INTERNAL_IP, address=ip)]
        return self._store.patch(machine)
