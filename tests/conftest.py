"""Shared fixtures: in-memory stand-ins for the object store and the Incus backend."""
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from incus_operator.finalizers import MACHINE_FINALIZER
from incus_operator.incus import NEVER
from incus_operator.reconciler import MachineReconciler

NAMESPACE = "default"


class FakeStore:
    """Dict-backed object store that behaves like the API server for finalizers.

    An object whose deletion was requested is purged once its last finalizer
    goes, as Kubernetes does.
    """

    def __init__(self):
        self.objects: Dict[Tuple[Optional[str], str], Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []
        self.status_updates: List[Dict[str, Any]] = []
        self.status_errors: List[Exception] = []
        self.on_status_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None
        self._version = 0

    def _key(self, body):
        meta = body["metadata"]
        return meta.get("namespace"), meta["name"]

    def _bump(self, stored):
        self._version += 1
        stored["metadata"]["resourceVersion"] = str(self._version)

    def put(self, body: Dict[str, Any]) -> None:
        stored = copy.deepcopy(body)
        self._bump(stored)
        self.objects[self._key(stored)] = stored

    def stored(self, name: str, namespace: Optional[str] = NAMESPACE) -> Optional[Dict[str, Any]]:
        return self.objects.get((namespace, name))

    def get(self, namespace, name):
        obj = self.objects.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def update(self, body):
        key = self._key(body)
        stored = self.objects[key]
        stored["metadata"]["finalizers"] = list(body["metadata"].get("finalizers") or [])
        self.updates.append(copy.deepcopy(body))
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"]["finalizers"]:
            del self.objects[key]
            return copy.deepcopy(stored)
        self._bump(stored)
        body["metadata"]["resourceVersion"] = stored["metadata"]["resourceVersion"]
        return copy.deepcopy(stored)

    def update_status(self, body, status):
        if self.status_errors:
            raise self.status_errors.pop(0)
        if self.on_status_update is not None:
            self.on_status_update(body, status)
        stored = self.objects[self._key(body)]
        stored["status"] = copy.deepcopy(status)
        self.status_updates.append(copy.deepcopy(status))
        self._bump(stored)
        body["status"] = status
        return copy.deepcopy(stored)


class FakeBackend:
    """In-memory Incus backend recording every call made through the contract."""

    def __init__(self):
        self.instances: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}
        self.create_leaves_instance = False
        self.delete_is_noop = False

    def _record(self, method, *args, cancel=NEVER):
        self.calls.append((method,) + args)
        cancel.check(method)
        error = self.errors.get(method)
        if error is not None:
            raise error

    def connect(self, cancel=NEVER):
        self._record("connect", cancel=cancel)

    def create_instance(self, name, image, cpus, memory_mib, root_disk_size_gib, cancel=NEVER):
        try:
            self._record("create_instance", name, image, cpus, memory_mib, root_disk_size_gib, cancel=cancel)
        except Exception:
            if self.create_leaves_instance:
                self.instances[name] = {"image": image, "cpus": cpus, "memory_mib": memory_mib}
            raise
        self.instances[name] = {"image": image, "cpus": cpus, "memory_mib": memory_mib}

    def delete_instance(self, name, cancel=NEVER):
        self._record("delete_instance", name, cancel=cancel)
        if not self.delete_is_noop:
            del self.instances[name]

    def instance_exists(self, name, cancel=NEVER):
        self._record("instance_exists", name, cancel=cancel)
        return name in self.instances

    def close(self):
        self._record("close")

    def mutating_calls(self):
        return [c for c in self.calls if c[0] in ("create_instance", "delete_instance")]


def machine_body(
    name: str = "w1",
    namespace: Optional[str] = NAMESPACE,
    image: str = "",
    cpus: int = 0,
    memory_mib: int = 0,
    root_disk_size_gib: int = 0,
    finalizers: Optional[List[str]] = None,
    deleting: bool = False,
    instance_id: str = "",
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "apiVersion": "infrastructure.cluster.x-k8s.io/v1alpha1",
        "kind": "IncusMachine",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": 1,
            "finalizers": list(finalizers or []),
        },
        "spec": {
            "image": image,
            "cpus": cpus,
            "memoryMiB": memory_mib,
            "rootDiskSizeGiB": root_disk_size_gib,
        },
    }
    if deleting:
        body["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    if instance_id:
        body["status"] = {"instanceId": instance_id}
    return body


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def reconciler(store, backend):
    return MachineReconciler(store, backend)


@pytest.fixture
def finalized_machine(store):
    """Store an IncusMachine that already carries the finalizer and return a factory."""

    def _make(**kwargs):
        kwargs.setdefault("finalizers", [MACHINE_FINALIZER])
        body = machine_body(**kwargs)
        store.put(body)
        return body

    return _make
