"""Kopf handlers for IncusCluster. Cluster-level infrastructure is not managed yet."""
from __future__ import annotations

from typing import Dict, Optional

import kopf

from incus_operator.machine import CLUSTER_PLURAL, INFRA_GROUP, INFRA_VERSION


@kopf.on.resume(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
@kopf.on.create(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
@kopf.on.update(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
def cluster_reconcile(namespace: Optional[str], name: str, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    logger.debug(f"IncusCluster '{namespace}/{name}' observed; nothing to reconcile")
