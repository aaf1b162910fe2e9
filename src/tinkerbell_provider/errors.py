"""Error taxonomy for hardware allocation and machine provisioning.

Every failure raised by the provisioning core is a ProvisioningError carrying
an ErrorKind and a small dict of structured context (selector text, hardware
identity, ...). Callers match on ``err.kind`` rather than on exception
identity, so a wrapped error keeps the kind of its root cause:

    try:
        reconciler.reconcile("default", "worker-0")
    except ProvisioningError as e:
        if e.kind is ErrorKind.CONFLICT:
            ...  # restart the whole pass

Stages wrap errors with the ``stage()`` context manager, which prefixes the
message ("ensuring hardware: ...") and chains the original as ``__cause__``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the provisioning core."""

    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    CONFLICT = "Conflict"
    STORE = "StoreError"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    NO_HARDWARE_AVAILABLE = "NoHardwareAvailable"
    MISSING_DISK_CONFIGURATION = "MissingDiskConfiguration"
    NO_IP = "NoIP"
    SELECTOR = "SelectorError"
    RENDER = "RenderError"


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    kind: ErrorKind = ErrorKind.STORE

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context

    @property
    def root(self) -> ProvisioningError:
        """Innermost ProvisioningError in the wrap chain."""
        return self

    def wrap(self, stage: str) -> StageError:
        return StageError(stage, self)


class StageError(ProvisioningError):
    """A ProvisioningError annotated with the stage it surfaced from."""

    def __init__(self, stage: str, cause: ProvisioningError) -> None:
        super().__init__(f"{stage}: {cause}", **cause.context)
        self.stage = stage
        self.cause = cause

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return self.cause.kind

    @property
    def root(self) -> ProvisioningError:
        return self.cause.root


# Store errors


class StoreError(ProvisioningError):
    """Transport or availability failure talking to the resource store."""

    kind = ErrorKind.STORE


class NotFoundError(StoreError):
    """The requested resource does not exist."""

    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(StoreError):
    """A create raced with another create of the same identity."""

    kind = ErrorKind.ALREADY_EXISTS


class ConflictError(StoreError):
    """Optimistic-concurrency write rejected: the stored version moved on."""

    kind = ErrorKind.CONFLICT


class DeadlineExceededError(StoreError):
    """The pass deadline expired before a store call could be issued."""

    kind = ErrorKind.DEADLINE_EXCEEDED


# Domain errors


class NoHardwareAvailableError(ProvisioningError):
    """Allocation found no unclaimed hardware satisfying the affinity."""

    kind = ErrorKind.NO_HARDWARE_AVAILABLE


class MissingDiskConfigurationError(ProvisioningError):
    """The selected hardware has no disk descriptors."""

    kind = ErrorKind.MISSING_DISK_CONFIGURATION


class NoIPError(ProvisioningError):
    """No internal IP address could be derived from the hardware."""

    kind = ErrorKind.NO_IP


class SelectorError(ProvisioningError):
    """A label selector is malformed."""

    kind = ErrorKind.SELECTOR


class RenderError(ProvisioningError):
    """A template or image lookup format could not be rendered."""

    kind = ErrorKind.RENDER


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Wrap any ProvisioningError raised in the block with stage context."""
    try:
        yield
    except ProvisioningError as e:
        raise e.wrap(name) from e
