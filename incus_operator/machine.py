"""IncusMachine resource model: identity constants, desired spec view and status."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from incus_operator.finalizers import is_deletion_requested

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
INFRA_GROUP = "infrastructure.cluster.x-k8s.io"
INFRA_VERSION = "v1alpha1"
MACHINE_KIND = "IncusMachine"
MACHINE_PLURAL = "incusmachines"
CLUSTER_KIND = "IncusCluster"
CLUSTER_PLURAL = "incusclusters"

READY_CONDITION = "Ready"


class ConditionReason(str, Enum):
    """Reasons recorded on the ``Ready`` condition."""

    INSTANCE_PROVISIONED = "InstanceProvisioned"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    INSTANCE_CHECK_FAILED = "InstanceCheckFailed"
    INSTANCE_CREATE_FAILED = "InstanceCreateFailed"
    INSTANCE_DELETE_FAILED = "InstanceDeleteFailed"


# ---------------------------------------------------------------------------
# Desired state --------------------------------------------------------------
# ---------------------------------------------------------------------------
def _int_field(spec: Mapping[str, Any], key: str) -> int:
    value = spec.get(key)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class DesiredMachine:
    """Read-only view of an IncusMachine's intent for a single reconcile."""

    name: str
    namespace: Optional[str] = None
    image: str = ""
    cpus: int = 0
    memory_mib: int = 0
    root_disk_size_gib: int = 0
    deletion_requested: bool = False
    generation: Optional[int] = None

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "DesiredMachine":
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace"),
            image=spec.get("image") or "",
            cpus=_int_field(spec, "cpus"),
            memory_mib=_int_field(spec, "memoryMiB"),
            root_disk_size_gib=_int_field(spec, "rootDiskSizeGiB"),
            deletion_requested=is_deletion_requested(body),
            generation=meta.get("generation"),
        )


# ---------------------------------------------------------------------------
# Status ---------------------------------------------------------------------
# ---------------------------------------------------------------------------
@dataclass
class MachineStatus:
    """Engine-owned part of the resource, persisted through the status subresource."""

    instance_id: str = ""
    conditions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "MachineStatus":
        status = body.get("status") or {}
        return cls(
            instance_id=status.get("instanceId") or "",
            conditions=[dict(c) for c in status.get("conditions") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"conditions": [dict(c) for c in self.conditions]}
        if self.instance_id:
            data["instanceId"] = self.instance_id
        return data

    def get_condition(self, condition_type: str) -> Optional[Dict[str, Any]]:
        for condition in self.conditions:
            if condition.get("type") == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: str,
        status: bool,
        reason: str,
        message: str = "",
        observed_generation: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Replace or append a condition; return ``True`` if anything changed.

        ``lastTransitionTime`` only moves when the condition's status flips.
        """
        status_str = "True" if status else "False"
        existing = self.get_condition(condition_type)
        if existing is not None and (
            existing.get("status") == status_str
            and existing.get("reason") == reason
            and existing.get("message") == message
            and existing.get("observedGeneration") == observed_generation
        ):
            return False

        timestamp = (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")
        updated = {
            "type": condition_type,
            "status": status_str,
            "reason": reason,
            "message": message,
            "lastTransitionTime": timestamp,
        }
        if observed_generation is not None:
            updated["observedGeneration"] = observed_generation

        if existing is None:
            self.conditions.append(updated)
            return True

        if existing.get("status") == status_str and existing.get("lastTransitionTime"):
            updated["lastTransitionTime"] = existing["lastTransitionTime"]
        existing.clear()
        existing.update(updated)
        return True
