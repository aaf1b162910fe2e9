"""Recording and fault-injecting ResourceStore wrappers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tinkerbell_provider.models import Resource
from tinkerbell_provider.selectors import Selector
from tinkerbell_provider.store import ResourceStore

R = TypeVar("R", bound=Resource)

WRITE_OPERATIONS = frozenset({"create", "update", "patch", "delete"})


@dataclass
class StoreCall:
    """One call made through the wrapper."""

    operation: str
    kind: str
    namespace: str | None = None
    name: str | None = None


class CountingStore:
    """Delegates to a real store and records every call."""

    def __init__(self, inner: ResourceStore) -> None:
        self._inner = inner
        self.calls: list[StoreCall] = []

    def _record(self, operation: str, kind: str, namespace: str | None, name: str | None) -> None:
        self.calls.append(StoreCall(operation, kind, namespace, name))

    def write_count(self, operation: str | None = None, kind: str | None = None) -> int:
        return sum(
            1
            for call in self.calls
            if call.operation in WRITE_OPERATIONS
            and (operation is None or call.operation == operation)
            and (kind is None or call.kind == kind)
        )

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        self._record("get", kind.KIND, namespace, name)
        return self._inner.get(kind, namespace, name)

    def list(
        self, kind: type[R], selector: Selector | None = None, namespace: str | None = None
    ) -> list[R]:
        self._record("list", kind.KIND, namespace, None)
        return self._inner.list(kind, selector, namespace)

    def create(self, obj: R) -> R:
        self._record("create", obj.KIND, obj.namespace, obj.name)
        return self._inner.create(obj)

    def update(self, obj: R) -> R:
        self._record("update", obj.KIND, obj.namespace, obj.name)
        return self._inner.update(obj)

    def patch(self, obj: R) -> R:
        self._record("patch", obj.KIND, obj.namespace, obj.name)
        return self._inner.patch(obj)

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        self._record("delete", kind.KIND, namespace, name)
        self._inner.delete(kind, namespace, name)


@dataclass
class _Hook:
    operation: str
    kind: str
    callback: Callable[[], None]
    remaining: int = 1


class FaultInjectingStore(CountingStore):
    """CountingStore that runs hooks (or raises) before matching calls.

    Hooks run before the call is delegated, which makes it possible to
    simulate another writer slipping in between a read and a write.
    """

    def __init__(self, inner: ResourceStore) -> None:
        super().__init__(inner)
        self._hooks: list[_Hook] = []

    def before(
        self, operation: str, kind: str, callback: Callable[[], None], times: int = 1
    ) -> None:
        self._hooks.append(_Hook(operation, kind, callback, remaining=times))

    def fail(self, operation: str, kind: str, error: Exception, times: int = 1) -> None:
        def raise_error() -> None:
            raise error

        self.before(operation, kind, raise_error, times)

    def _run_hooks(self, operation: str, kind: str) -> None:
        for hook in self._hooks:
            if hook.operation == operation and hook.kind == kind and hook.remaining > 0:
                hook.remaining -= 1
                hook.callback()

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        self._run_hooks("get", kind.KIND)
        return super().get(kind, namespace, name)

    def list(
        self, kind: type[R], selector: Selector | None = None, namespace: str | None = None
    ) -> list[R]:
        self._run_hooks("list", kind.KIND)
        return super().list(kind, selector, namespace)

    def create(self, obj: R) -> R:
        self._run_hooks("create", obj.KIND)
        return super().create(obj)

    def update(self, obj: R) -> R:
        self._run_hooks("update", obj.KIND)
        return super().update(obj)

    def patch(self, obj: R) -> R:
        self._run_hooks("patch", obj.KIND)
        return super().patch(obj)

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        self._run_hooks("delete", kind.KIND)
        super().delete(kind, namespace, name)
