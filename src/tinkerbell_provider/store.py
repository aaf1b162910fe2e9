"""Resource store interface and an in-memory implementation.

The provisioning core talks to the store only through ResourceStore:

    get(kind, namespace, name)      -> resource or NotFoundError
    list(kind, selector)            -> resources whose labels match
    create(obj)                     -> AlreadyExistsError on identity clash
    update(obj)                     -> conditioned on obj.metadata.resource_version
    patch(obj)                      -> unconditioned write
    delete(kind, namespace, name)   -> honours finalizers, cascades to owned objects

InMemoryStore implements the same optimistic-concurrency and finalizer
semantics as a real API server so that the reconciler behaves identically
against either. All returned objects are deep copies; mutating them never
touches stored state.

DeadlineStore wraps any store and checks a pass deadline before every call,
which is how cancellation reaches each store operation.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from .errors import (
    AlreadyExistsError,
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    StoreError,
)
from .models import Resource
from .selectors import Selector

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

# Prevent unbounded growth of the in-memory store
MAX_OBJECTS = 10000


class ResourceStore(Protocol):
    """Typed CRUD over namespaced resources with optimistic concurrency."""

    def get(self, kind: type[R], namespace: str, name: str) -> R: ...

    def list(
        self, kind: type[R], selector: Selector | None = None, namespace: str | None = None
    ) -> list[R]: ...

    def create(self, obj: R) -> R: ...

    def update(self, obj: R) -> R: ...

    def patch(self, obj: R) -> R: ...

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None: ...


_Key = tuple[str, str, str]


def _key(kind: str, namespace: str, name: str) -> _Key:
    return (kind, namespace, name)


class InMemoryStore:
    """Thread-safe in-memory ResourceStore.

    Resource versions are a single monotonically increasing counter shared by
    all objects, as on a real API server. A write that does not change the
    object leaves its version untouched.
    """

    def __init__(self) -> None:
        self._objects: dict[_Key, Resource] = {}
        self._version = 0
        self._lock = threading.Lock()

    @property
    def object_count(self) -> int:
        return len(self._objects)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        with self._lock:
            obj = self._objects.get(_key(kind.KIND, namespace, name))
            if obj is None:
                raise NotFoundError(
                    f"{kind.KIND} {namespace}/{name} not found",
                    kind=kind.KIND,
                    namespace=namespace,
                    name=name,
                )
            return obj.model_copy(deep=True)  # type: ignore[return-value]

    def list(
        self, kind: type[R], selector: Selector | None = None, namespace: str | None = None
    ) -> list[R]:
        selector = selector or Selector.everything()
        with self._lock:
            items = [
                obj.model_copy(deep=True)
                for (obj_kind, obj_ns, _), obj in sorted(self._objects.items())
                if obj_kind == kind.KIND
                and (namespace is None or obj_ns == namespace)
                and selector.matches(obj.metadata.labels)
            ]
        return items  # type: ignore[return-value]

    def create(self, obj: R) -> R:
        key = _key(obj.KIND, obj.namespace, obj.name)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(
                    f"{obj.KIND} {obj.namespace}/{obj.name} already exists",
                    kind=obj.KIND,
                    namespace=obj.namespace,
                    name=obj.name,
                )
            if len(self._objects) >= MAX_OBJECTS:
                raise StoreError(f"store is full ({MAX_OBJECTS} objects)")

            stored = obj.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.resource_version = self._next_version()
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            return stored.model_copy(deep=True)

    def update(self, obj: R) -> R:
        return self._write(obj, conditioned=True)

    def patch(self, obj: R) -> R:
        return self._write(obj, conditioned=False)

    def _write(self, obj: R, *, conditioned: bool) -> R:
        key = _key(obj.KIND, obj.namespace, obj.name)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(
                    f"{obj.KIND} {obj.namespace}/{obj.name} not found",
                    kind=obj.KIND,
                    namespace=obj.namespace,
                    name=obj.name,
                )
            if conditioned and obj.metadata.resource_version != current.metadata.resource_version:
                raise ConflictError(
                    f"{obj.KIND} {obj.namespace}/{obj.name} was modified: "
                    f"expected version {obj.metadata.resource_version!r}, "
                    f"stored version {current.metadata.resource_version!r}",
                    kind=obj.KIND,
                    namespace=obj.namespace,
                    name=obj.name,
                )

            stored = obj.model_copy(deep=True)
            # Server-owned fields are never taken from the client
            stored.metadata.uid = current.metadata.uid
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            stored.metadata.resource_version = current.metadata.resource_version

            if stored.model_dump() == current.model_dump():
                return stored.model_copy(deep=True)

            if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
                self._remove(key)
                return stored.model_copy(deep=True)

            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            return stored.model_copy(deep=True)

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        """Delete an object, or mark it for deletion while finalizers remain."""
        key = _key(kind.KIND, namespace, name)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(
                    f"{kind.KIND} {namespace}/{name} not found",
                    kind=kind.KIND,
                    namespace=namespace,
                    name=name,
                )
            if current.metadata.finalizers:
                if current.metadata.deletion_timestamp is None:
                    current.metadata.deletion_timestamp = datetime.now(UTC)
                    current.metadata.resource_version = self._next_version()
                return
            self._remove(key)

    def _remove(self, key: _Key) -> None:
        """Remove an object and cascade to everything it owns. Caller holds the lock."""
        removed = self._objects.pop(key)
        owned = [
            other_key
            for other_key, other in self._objects.items()
            if any(ref.uid == removed.metadata.uid for ref in other.metadata.owner_references)
        ]
        for other_key in owned:
            other = self._objects.get(other_key)
            if other is None:
                continue
            if other.metadata.finalizers:
                if other.metadata.deletion_timestamp is None:
                    other.metadata.deletion_timestamp = datetime.now(UTC)
                other.metadata.resource_version = self._next_version()
            else:
                self._remove(other_key)
        logger.debug(
            "Removed object",
            extra={"object_kind": key[0], "namespace": key[1], "object_name": key[2]},
        )


class Deadline:
    """Monotonic deadline for one reconcile pass."""

    def __init__(self, expires_at: float | None) -> None:
        self._expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> Deadline:
        return cls(None)

    @property
    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceededError(
                f"deadline exceeded before {operation}", operation=operation
            )


class DeadlineStore:
    """ResourceStore wrapper that refuses calls once the deadline has passed."""

    def __init__(self, store: ResourceStore, deadline: Deadline) -> None:
        self._store = store
        self._deadline = deadline

    @property
    def deadline(self) -> Deadline:
        return self._deadline

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        self._deadline.check(f"get {kind.KIND} {namespace}/{name}")
        return self._store.get(kind, namespace, name)

    def list(
        self, kind: type[R], selector: Selector | None = None, namespace: str | None = None
    ) -> list[R]:
        self._deadline.check(f"list {kind.KIND}")
        return self._store.list(kind, selector, namespace)

    def create(self, obj: R) -> R:
        self._deadline.check(f"create {obj.KIND} {obj.namespace}/{obj.name}")
        return self._store.create(obj)

    def update(self, obj: R) -> R:
        self._deadline.check(f"update {obj.KIND} {obj.namespace}/{obj.name}")
        return self._store.update(obj)

    def patch(self, obj: R) -> R:
        self._deadline.check(f"patch {obj.KIND} {obj.namespace}/{obj.name}")
        return self._store.patch(obj)

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        self._deadline.check(f"delete {kind.KIND} {namespace}/{name}")
        self._store.delete(kind, namespace, name)
