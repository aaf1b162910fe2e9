"""Resource store test doubles.

Wrappers around InMemoryStore that record writes and inject failures, plus
factories for the objects the provisioning core works on.

Usage:
    from store_mock import CountingStore, make_hardware, make_machine

    store = CountingStore(InMemoryStore())
    store.create(make_hardware("hw-0", ip="10.0.0.10"))
    reconciler = MachineReconciler(store, Config())
    ...
    assert store.write_count("create", "Template") == 1
"""

from .factories import make_hardware, make_machine, seed
from .stores import CountingStore, FaultInjectingStore, StoreCall

__all__ = [
    "CountingStore",
    "FaultInjectingStore",
    "StoreCall",
    "make_hardware",
    "make_machine",
    "seed",
]
