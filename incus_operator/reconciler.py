"""
reconciler.py
-------------
Reconciliation of a single IncusMachine against the Incus backend.

The state of a machine is never stored; it is derived on every call from the
resource (deletion requested? finalizer present?) and from a fresh existence
check against the backend:

    New              live, no finalizer          -> add finalizer, requeue
    PendingCreate    live, finalizer, no VM      -> create VM, record instanceId
    Reconciled       live, finalizer, VM         -> sync status if it drifted
    PendingDelete    deleting, finalizer, VM     -> delete VM
    FinalizerRemoval deleting, finalizer, no VM  -> drop finalizer
    Deleted          deleting, no finalizer      -> nothing left to do

Creates and deletes are gated on the existence check so that a request
delivered twice, or replayed after a crash halfway through, converges on one
instance instead of duplicating or leaking it. Backend errors propagate; the
caller decides when to try again. A caller-supplied :class:`Cancellation`
bounds every backend call of one pass; when it fires the pass aborts with
``IncusCancelledError`` (wrapped as a create or delete error mid-operation)
and neither ``instanceId`` nor the finalizer is changed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from incus_operator.config import DEFAULT_IMAGE
from incus_operator.finalizers import (
    MACHINE_FINALIZER,
    add_finalizer,
    has_finalizer,
    remove_finalizer,
)
from incus_operator.incus import (
    NEVER,
    Cancellation,
    IncusCancelledError,
    IncusConnectionError,
    IncusDeleteError,
    IncusError,
    InstanceBackend,
)
from incus_operator.machine import (
    READY_CONDITION,
    ConditionReason,
    DesiredMachine,
    MachineStatus,
)
from incus_operator.store import MachineStore

logger = logging.getLogger(__name__)

DEFAULT_CPUS = 2
DEFAULT_MEMORY_MIB = 2048


class MachineState(str, Enum):
    NEW = "New"
    PENDING_CREATE = "PendingCreate"
    RECONCILED = "Reconciled"
    PENDING_DELETE = "PendingDelete"
    FINALIZER_REMOVAL = "FinalizerRemoval"
    DELETED = "Deleted"


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False


@dataclass(frozen=True)
class InstanceSpec:
    """Parameters actually sent to the backend, after defaulting."""

    name: str
    image: str
    cpus: int
    memory_mib: int
    root_disk_size_gib: int


def derive_state(deletion_requested: bool, finalized: bool, exists: Optional[bool] = None) -> MachineState:
    """Map (deletion intent, finalizer presence, backend existence) to a state.

    *exists* is only consulted when the finalizer is present.
    """
    if deletion_requested:
        if not finalized:
            return MachineState.DELETED
        return MachineState.PENDING_DELETE if exists else MachineState.FINALIZER_REMOVAL
    if not finalized:
        return MachineState.NEW
    return MachineState.RECONCILED if exists else MachineState.PENDING_CREATE


def instance_name_for(machine: DesiredMachine, status: MachineStatus) -> str:
    """A recorded ``instanceId`` wins over the resource name."""
    return status.instance_id or machine.name


def resolve_instance_spec(
    machine: DesiredMachine, instance_name: str, default_image: str = DEFAULT_IMAGE
) -> InstanceSpec:
    return InstanceSpec(
        name=instance_name,
        image=machine.image or default_image,
        cpus=machine.cpus if machine.cpus >= 1 else DEFAULT_CPUS,
        memory_mib=machine.memory_mib if machine.memory_mib >= 1 else DEFAULT_MEMORY_MIB,
        root_disk_size_gib=max(machine.root_disk_size_gib, 0),
    )


class MachineReconciler:
    """Drives one IncusMachine per :meth:`reconcile` call. Holds no per-object state."""

    def __init__(
        self,
        store: MachineStore,
        backend: InstanceBackend,
        finalizer: str = MACHINE_FINALIZER,
        default_image: str = DEFAULT_IMAGE,
    ):
        self.store = store
        self.backend = backend
        self.finalizer = finalizer
        self.default_image = default_image

    def reconcile(
        self, namespace: Optional[str], name: str, cancel: Cancellation = NEVER
    ) -> ReconcileResult:
        body = self.store.get(namespace, name)
        if body is None:
            logger.debug(f"IncusMachine {namespace}/{name} is gone, nothing to do")
            return ReconcileResult()

        machine = DesiredMachine.from_body(body)
        if machine.deletion_requested:
            return self._reconcile_delete(body, machine, cancel)

        if not has_finalizer(body, self.finalizer):
            add_finalizer(body, self.finalizer)
            self.store.update(body)
            logger.info(f"Added finalizer to IncusMachine {namespace}/{name}")
            return ReconcileResult(requeue=True)

        return self._reconcile_normal(body, machine, cancel)

    # ------------------------------------------------------------------
    def _reconcile_normal(
        self, body: Dict[str, Any], machine: DesiredMachine, cancel: Cancellation
    ) -> ReconcileResult:
        status = MachineStatus.from_body(body)
        instance_name = instance_name_for(machine, status)

        exists = self._observe(body, machine, status, instance_name, cancel)
        state = derive_state(False, True, exists)
        logger.debug(f"IncusMachine {machine.namespace}/{machine.name} is {state.value} (instance {instance_name})")

        if state is MachineState.RECONCILED:
            changed = status.instance_id != instance_name
            status.instance_id = instance_name
            changed |= self._mark_ready(status, machine, instance_name)
            if changed:
                self.store.update_status(body, status.to_dict())
                logger.info(f"Synced status of IncusMachine {machine.namespace}/{machine.name} to instance {instance_name}")
            return ReconcileResult()

        spec = resolve_instance_spec(machine, instance_name, self.default_image)
        logger.info(
            f"Creating Incus instance {spec.name} for IncusMachine {machine.namespace}/{machine.name} "
            f"(image={spec.image}, cpus={spec.cpus}, memory={spec.memory_mib}MiB, rootDisk={spec.root_disk_size_gib}GiB)"
        )
        try:
            self.backend.create_instance(
                spec.name, spec.image, spec.cpus, spec.memory_mib, spec.root_disk_size_gib, cancel=cancel
            )
        except IncusError as exc:
            logger.error(f"Failed to create Incus instance {spec.name} for {machine.namespace}/{machine.name}: {exc}")
            self._record_failure(body, machine, status, ConditionReason.INSTANCE_CREATE_FAILED, exc)
            raise

        status.instance_id = spec.name
        self._mark_ready(status, machine, spec.name)
        self.store.update_status(body, status.to_dict())
        logger.info(f"Created Incus VM instance {spec.name} for IncusMachine {machine.namespace}/{machine.name}")
        return ReconcileResult()

    def _reconcile_delete(
        self, body: Dict[str, Any], machine: DesiredMachine, cancel: Cancellation
    ) -> ReconcileResult:
        if not has_finalizer(body, self.finalizer):
            return ReconcileResult()

        status = MachineStatus.from_body(body)
        instance_name = instance_name_for(machine, status)

        exists = self._observe(body, machine, status, instance_name, cancel)
        if derive_state(True, True, exists) is MachineState.PENDING_DELETE:
            logger.info(f"Deleting Incus instance {instance_name} for IncusMachine {machine.namespace}/{machine.name}")
            try:
                self.backend.delete_instance(instance_name, cancel=cancel)
            except IncusError as exc:
                logger.error(f"Failed to delete Incus instance {instance_name} for {machine.namespace}/{machine.name}: {exc}")
                self._record_failure(body, machine, status, ConditionReason.INSTANCE_DELETE_FAILED, exc)
                raise
            logger.info(f"Deleted Incus VM instance {instance_name}")

            if self._observe(body, machine, status, instance_name, cancel):
                exc = IncusDeleteError(f"instance {instance_name} still exists after deletion")
                self._record_failure(body, machine, status, ConditionReason.INSTANCE_DELETE_FAILED, exc)
                raise exc

        remove_finalizer(body, self.finalizer)
        self.store.update(body)
        logger.info(f"Removed finalizer from IncusMachine {machine.namespace}/{machine.name}")
        return ReconcileResult()

    # ------------------------------------------------------------------
    def _observe(
        self,
        body: Dict[str, Any],
        machine: DesiredMachine,
        status: MachineStatus,
        instance_name: str,
        cancel: Cancellation,
    ) -> bool:
        """Connect and check existence, recording a condition on failure."""
        try:
            self.backend.connect(cancel)
        except IncusCancelledError:
            raise
        except IncusError as exc:
            logger.error(f"Incus backend unavailable while reconciling {machine.namespace}/{machine.name}: {exc}")
            self._record_failure(body, machine, status, ConditionReason.BACKEND_UNAVAILABLE, exc)
            raise
        try:
            return self.backend.instance_exists(instance_name, cancel)
        except IncusCancelledError:
            raise
        except IncusError as exc:
            logger.error(f"Failed to check if instance {instance_name} exists: {exc}")
            reason = (
                ConditionReason.BACKEND_UNAVAILABLE
                if isinstance(exc, IncusConnectionError)
                else ConditionReason.INSTANCE_CHECK_FAILED
            )
            self._record_failure(body, machine, status, reason, exc)
            raise

    def _mark_ready(self, status: MachineStatus, machine: DesiredMachine, instance_name: str) -> bool:
        return status.set_condition(
            READY_CONDITION,
            True,
            ConditionReason.INSTANCE_PROVISIONED.value,
            f"Incus instance {instance_name} exists",
            observed_generation=machine.generation,
        )

    def _record_failure(
        self,
        body: Dict[str, Any],
        machine: DesiredMachine,
        status: MachineStatus,
        reason: ConditionReason,
        exc: Exception,
    ) -> None:
        """Surface *exc* as a not-ready condition; ``instanceId`` and finalizers stay untouched."""
        if not status.set_condition(
            READY_CONDITION, False, reason.value, str(exc), observed_generation=machine.generation
        ):
            return
        try:
            self.store.update_status(body, status.to_dict())
        except Exception as write_exc:  # noqa: BLE001
            logger.warning(
                f"Could not record {reason.value} on IncusMachine {machine.namespace}/{machine.name}: {write_exc}"
            )
