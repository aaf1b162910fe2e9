"""Machine reconciliation: one idempotent pass per invocation.

A pass is a linear pipeline, every stage either finding its postcondition
already met or establishing it:

1. Ensure the machine carries the release finalizer
2. Ensure hardware: allocate -> claim -> inject user data -> report status
3. Ensure the Template exists
4. Ensure the Workflow exists
5. Mark the machine ready

Any failure aborts the pass with the error wrapped in stage context. Nothing
is retried here: the caller re-invokes the whole pass (with backoff), and
because every stage is idempotent, re-entry is cheap and correct. A
ConflictError in particular means allocation state may be stale, so the
correct response is a fresh pass rather than a retried write.

Machines with a deletion timestamp take the delete path instead: release the
claimed hardware, then drop the machine finalizer. Template and Workflow are
owned by the machine and cascade with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .allocation import HardwareAllocator
from .config import Config
from .errors import NotFoundError, stage
from .hardware import (
    OwnershipClaimer,
    ProvisioningDataInjector,
    StatusReporter,
    provider_id_for,
)
from .models import MACHINE_FINALIZER, Hardware, TinkerbellMachine
from .store import Deadline, DeadlineStore, ResourceStore
from .templates import TemplateEnsurer
from .workflow import WorkflowEnsurer

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a single successful reconcile pass."""

    namespace: str
    name: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    found: bool = True
    deleted: bool = False
    waiting_for_bootstrap: bool = False
    hardware_name: str | None = None
    provider_id: str | None = None
    template_created: bool = False
    workflow_created: bool = False
    ready: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class MachineReconcileContext:
    """State and stages of one pass over one machine."""

    def __init__(self, store: ResourceStore, config: Config, machine: TinkerbellMachine) -> None:
        self._store = store
        self.machine = machine
        self.allocator = HardwareAllocator(store)
        self.claimer = OwnershipClaimer(store)
        self.injector = ProvisioningDataInjector(store)
        self.reporter = StatusReporter(store)
        self.templates = TemplateEnsurer(store, config)
        self.workflows = WorkflowEnsurer(store)

    @property
    def machine_id(self) -> str:
        return f"{self.machine.namespace}/{self.machine.name}"

    def _persist(self) -> None:
        self.machine = self._store.patch(self.machine)

    def add_finalizer(self) -> None:
        # Set before anything is created so nothing can be orphaned
        if self.machine.add_finalizer(MACHINE_FINALIZER):
            self._persist()

    def ensure_hardware(self) -> Hardware:
        with stage("getting hardware"):
            hardware = self.allocator.allocate(self.machine)

        with stage("taking hardware ownership"):
            hardware = self.claimer.claim(hardware, self.machine)

        if not self.machine.spec.hardware_name:
            logger.info(
                "Selected hardware for machine",
                extra={"machine": self.machine_id, "hardware": hardware.name},
            )

        self.machine.spec.hardware_name = hardware.name
        self.machine.spec.provider_id = provider_id_for(hardware)

        with stage("ensuring hardware user data"):
            hardware = self.injector.inject(hardware, self.machine, self.machine.spec.provider_id)

        with stage("setting machine status"):
            self.machine = self.reporter.report(hardware, self.machine)

        return hardware

    def mark_as_ready(self) -> None:
        self.machine.status.ready = True
        self._persist()

    def reconcile(self, result: ReconcileResult) -> None:
        with stage("adding finalizer"):
            self.add_finalizer()

        if self.machine.spec.bootstrap_data is None:
            logger.info("Bootstrap data not yet available", extra={"machine": self.machine_id})
            result.waiting_for_bootstrap = True
            return

        with stage("ensuring machine dependencies"):
            with stage("ensuring hardware"):
                hardware = self.ensure_hardware()
            result.hardware_name = hardware.name
            result.provider_id = self.machine.spec.provider_id

            with stage("ensuring template"):
                result.template_created = self.templates.ensure(hardware, self.machine)

            with stage("ensuring workflow"):
                result.workflow_created = self.workflows.ensure(hardware, self.machine)

        with stage("marking machine as ready"):
            self.mark_as_ready()
        result.ready = True

    def reconcile_delete(self, result: ReconcileResult) -> None:
        with stage("releasing hardware"):
            hardware = self.allocator.assigned_hardware(self.machine)
            if hardware is not None:
                self.claimer.release(hardware, self.machine)
                result.hardware_name = hardware.name

        with stage("removing finalizer"):
            if self.machine.remove_finalizer(MACHINE_FINALIZER):
                self._persist()
        result.deleted = True


class MachineReconciler:
    """Entry point invoked (at least once, possibly concurrently) per machine.

    Invocations for the same machine are expected to be serialized by the
    caller; invocations for different machines may race for the same
    hardware, which the claim protocol resolves.
    """

    def __init__(self, store: ResourceStore, config: Config) -> None:
        self._store = store
        self._config = config

    def reconcile(
        self, namespace: str, name: str, deadline: Deadline | None = None
    ) -> ReconcileResult:
        """Run one pass for the machine ``namespace/name``.

        Args:
            namespace: Machine namespace.
            name: Machine name.
            deadline: Cancellation deadline checked before every store call;
                defaults to the configured reconcile timeout.

        Returns:
            ReconcileResult describing what the pass did.

        Raises:
            ProvisioningError: Wrapped with stage context; ``err.kind`` is the
                kind of the root cause.
        """
        deadline = deadline or Deadline.after(self._config.reconcile_timeout_seconds)
        store = DeadlineStore(self._store, deadline)
        result = ReconcileResult(namespace=namespace, name=name)

        with stage("getting machine"):
            try:
                machine = store.get(TinkerbellMachine, namespace, name)
            except NotFoundError:
                logger.info(
                    "Machine not found, nothing to do",
                    extra={"machine": f"{namespace}/{name}"},
                )
                result.found = False
                result.end_time = datetime.now(UTC)
                return result

        context = MachineReconcileContext(store, self._config, machine)
        if machine.metadata.deletion_timestamp is not None:
            context.reconcile_delete(result)
        else:
            context.reconcile(result)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _log_result(self, result: ReconcileResult) -> None:
        logger.info(
            "Reconciliation complete",
            extra={
                "machine": f"{result.namespace}/{result.name}",
                "hardware": result.hardware_name,
                "provider_id": result.provider_id,
                "deleted": result.deleted,
                "waiting_for_bootstrap": result.waiting_for_bootstrap,
                "template_created": result.template_created,
                "workflow_created": result.workflow_created,
                "ready": result.ready,
                "duration_seconds": result.duration_seconds,
            },
        )
