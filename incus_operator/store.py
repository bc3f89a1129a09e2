"""Declarative object store: read and persist IncusMachine resources."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from kubernetes.client import ApiException, CustomObjectsApi

from incus_operator.machine import INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL

logger = logging.getLogger(__name__)


class MachineStore(Protocol):
    def get(self, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]: ...

    def update(self, body: Dict[str, Any]) -> Dict[str, Any]: ...

    def update_status(self, body: Dict[str, Any], status: Dict[str, Any]) -> Dict[str, Any]: ...


class KubernetesObjectStore:
    """``MachineStore`` over ``CustomObjectsApi``.

    Writes are merge patches carrying the body's ``resourceVersion``, so a write
    based on a stale read fails with 409 instead of clobbering newer state.
    """

    def __init__(
        self,
        api: CustomObjectsApi,
        group: str = INFRA_GROUP,
        version: str = INFRA_VERSION,
        plural: str = MACHINE_PLURAL,
    ):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural

    def get(self, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                logger.debug(f"{self.plural} {namespace}/{name} not found")
                return None
            raise

    def update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        patch = {
            "metadata": {
                "finalizers": list(meta.get("finalizers") or []),
                "resourceVersion": meta.get("resourceVersion"),
            }
        }
        result = self.api.patch_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=meta.get("namespace"),
            plural=self.plural,
            name=meta["name"],
            body=patch,
        )
        self._refresh_version(body, result)
        return result

    def update_status(self, body: Dict[str, Any], status: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        patch = {
            "metadata": {"resourceVersion": meta.get("resourceVersion")},
            "status": status,
        }
        result = self.api.patch_namespaced_custom_object_status(
            group=self.group,
            version=self.version,
            namespace=meta.get("namespace"),
            plural=self.plural,
            name=meta["name"],
            body=patch,
        )
        body["status"] = status
        self._refresh_version(body, result)
        return result

    @staticmethod
    def _refresh_version(body: Dict[str, Any], result: Any) -> None:
        if isinstance(result, dict):
            version = (result.get("metadata") or {}).get("resourceVersion")
            if version:
                body["metadata"]["resourceVersion"] = version
