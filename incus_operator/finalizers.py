"""
Finalizer helpers for Kubernetes-shaped resource bodies.

The marker blocks final removal of a resource until the backend resource it
points at is confirmed gone. Helpers mutate the body in place; persisting the
change is the caller's job.
"""
from __future__ import annotations

from typing import Any, Mapping, MutableMapping

MACHINE_FINALIZER = "infrastructure.cluster.x-k8s.io/incusmachine"


def has_finalizer(body: MutableMapping[str, Any], finalizer: str) -> bool:
    return finalizer in ((body.get("metadata") or {}).get("finalizers") or [])


def add_finalizer(body: MutableMapping[str, Any], finalizer: str) -> bool:
    """Append *finalizer* unless present. Returns ``True`` if the body changed."""
    meta = body.setdefault("metadata", {})
    finalizers = list(meta.get("finalizers") or [])
    if finalizer in finalizers:
        return False
    finalizers.append(finalizer)
    meta["finalizers"] = finalizers
    return True


def remove_finalizer(body: MutableMapping[str, Any], finalizer: str) -> bool:
    """Drop every occurrence of *finalizer*. Returns ``True`` if the body changed."""
    meta = body.setdefault("metadata", {})
    finalizers = list(meta.get("finalizers") or [])
    if finalizer not in finalizers:
        return False
    meta["finalizers"] = [f for f in finalizers if f != finalizer]
    return True


def is_deletion_requested(body: Mapping[str, Any]) -> bool:
    return bool((body.get("metadata") or {}).get("deletionTimestamp"))
