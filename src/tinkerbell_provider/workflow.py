"""Workflow creation: binds a machine's Template to its hardware."""

from __future__ import annotations

import logging

from .errors import AlreadyExistsError, NotFoundError
from .models import Hardware, ObjectMeta, TinkerbellMachine, Workflow, WorkflowSpec
from .store import ResourceStore

logger = logging.getLogger(__name__)

# Logical device the default template's worker placeholder refers to
WORKFLOW_DEVICE = "device_1"


class WorkflowEnsurer:
    """Makes sure the machine's Workflow exists, creating it once."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def exists(self, machine: TinkerbellMachine) -> bool:
        try:
            self._store.get(Workflow, machine.namespace, machine.name)
        except NotFoundError:
            return False
        return True

    def ensure(self, hardware: Hardware, machine: TinkerbellMachine) -> bool:
        """Create the workflow if it does not exist. Returns True if created."""
        if self.exists(machine):
            return False

        logger.info(
            "Workflow does not exist, creating",
            extra={
                "machine": f"{machine.namespace}/{machine.name}",
                "hardware": f"{hardware.namespace}/{hardware.name}",
            },
        )
        workflow = Workflow(
            metadata=ObjectMeta(
                name=machine.name,
                namespace=machine.namespace,
                owner_references=[machine.owner_reference()],
            ),
            spec=WorkflowSpec(
                template_ref=machine.name,
                hardware_map={WORKFLOW_DEVICE: hardware.spec.metadata.instance.id},
            ),
        )

        try:
            self._store.create(workflow)
        except AlreadyExistsError:
            return False
        return True
