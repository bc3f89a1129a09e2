"""CustomResourceDefinitions for IncusMachine and IncusCluster."""
from __future__ import annotations

import logging
import sys
from typing import Dict, List

import kopf
import yaml
from kubernetes.client import ApiException, ApiextensionsV1Api

from incus_operator.machine import (
    CLUSTER_KIND,
    CLUSTER_PLURAL,
    INFRA_GROUP,
    INFRA_VERSION,
    MACHINE_KIND,
    MACHINE_PLURAL,
)

logger = logging.getLogger(__name__)

_CONDITIONS_SCHEMA: dict = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["type", "status"],
        "properties": {
            "type": {"type": "string"},
            "status": {"type": "string", "enum": ["True", "False", "Unknown"]},
            "reason": {"type": "string"},
            "message": {"type": "string"},
            "lastTransitionTime": {"type": "string", "format": "date-time"},
            "observedGeneration": {"type": "integer"},
        },
    },
}


def _crd(kind: str, plural: str, spec_schema: dict, status_schema: dict, printer_columns: List[dict]) -> dict:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{plural}.{INFRA_GROUP}"},
        "spec": {
            "group": INFRA_GROUP,
            "scope": "Namespaced",
            "names": {
                "plural": plural,
                "singular": kind.lower(),
                "kind": kind,
                "listKind": f"{kind}List",
            },
            "versions": [
                {
                    "name": INFRA_VERSION,
                    "served": True,
                    "storage": True,
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "properties": {
                                "spec": spec_schema,
                                "status": status_schema,
                            },
                        }
                    },
                    "subresources": {"status": {}},
                    "additionalPrinterColumns": printer_columns,
                }
            ],
        },
    }


INCUS_MACHINE_CRD_MANIFEST: dict = _crd(
    MACHINE_KIND,
    MACHINE_PLURAL,
    spec_schema={
        "type": "object",
        "properties": {
            "image": {"type": "string", "description": "Image reference, e.g. images:ubuntu/24.04."},
            "cpus": {"type": "integer", "description": "vCPU count; values below 1 mean 2."},
            "memoryMiB": {"type": "integer", "description": "Memory in MiB; values below 1 mean 2048."},
            "rootDiskSizeGiB": {
                "type": "integer",
                "description": "Root disk size in GiB. If 0, the image/profile default is used.",
            },
        },
    },
    status_schema={
        "type": "object",
        "x-kubernetes-preserve-unknown-fields": True,
        "properties": {
            "instanceId": {"type": "string", "description": "Name of the Incus VM instance."},
            "conditions": _CONDITIONS_SCHEMA,
        },
    },
    printer_columns=[
        {"name": "Instance", "type": "string", "jsonPath": ".status.instanceId"},
        {"name": "Ready", "type": "string", "jsonPath": '.status.conditions[?(@.type=="Ready")].status'},
        {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
    ],
)

INCUS_CLUSTER_CRD_MANIFEST: dict = _crd(
    CLUSTER_KIND,
    CLUSTER_PLURAL,
    spec_schema={
        "type": "object",
        "properties": {"network": {"type": "string"}},
    },
    status_schema={
        "type": "object",
        "x-kubernetes-preserve-unknown-fields": True,
        "properties": {"ready": {"type": "boolean"}},
    },
    printer_columns=[
        {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
    ],
)

CRD_MANIFESTS: Dict[str, dict] = {
    MACHINE_PLURAL: INCUS_MACHINE_CRD_MANIFEST,
    CLUSTER_PLURAL: INCUS_CLUSTER_CRD_MANIFEST,
}


def ensure_crds(api: ApiextensionsV1Api) -> None:
    """Create the CRDs if they are missing."""
    for manifest in CRD_MANIFESTS.values():
        crd_name = manifest["metadata"]["name"]
        try:
            api.create_custom_resource_definition(body=manifest)
            logger.info("CRD %s applied", crd_name)
        except ApiException as exc:
            if exc.status == 409:  # already present
                logger.debug("CRD %s already present", crd_name)
            elif exc.status == 429:
                raise kopf.TemporaryError("API busy, retrying", delay=10) from exc
            else:
                raise kopf.PermanentError(f"CRD {crd_name} creation failed: {exc.status} {exc.reason}") from exc


def main() -> None:
    """Print the CRD manifests as a YAML stream, ready for ``kubectl apply -f -``."""
    yaml.safe_dump_all(list(CRD_MANIFESTS.values()), sys.stdout, sort_keys=False)


if __name__ == "__main__":
    main()
