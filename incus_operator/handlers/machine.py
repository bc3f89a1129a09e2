"""
handlers/machine.py
-------------------
Kopf handlers that feed IncusMachine events into :class:`MachineReconciler`.

Kopf is the event source and the scheduler: it delivers a reconcile request on
create/update/resume/delete and on a periodic timer, serializes handlers per
object, and retries a handler that raised ``kopf.TemporaryError`` after the
given delay. The handlers here only forward the object identity; the
reconciler fetches the current object itself.
Each pass runs under a Cancellation bounded by RECONCILE_TIMEOUT and tripped by
operator shutdown (and, for the timer, by kopf's ``stopped`` flag).

Structure:
    1. Configuration & logging
    2. Kubernetes / Incus client bootstrap (on operator startup)
    3. Kopf event-handlers
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

import kopf
import kubernetes
from kopf import OperatorSettings
from kubernetes.client import (
    ApiException,
    ApiextensionsV1Api,
    CustomObjectsApi,
)

from incus_operator.config import load_config
from incus_operator.crds import ensure_crds
from incus_operator.incus import Cancellation, IncusClient, IncusError
from incus_operator.machine import INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL
from incus_operator.reconciler import MachineReconciler
from incus_operator.store import KubernetesObjectStore

# ---------------------------------------------------------------------------
# Configuration --------------------------------------------------------------
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

CONFIG = load_config()

# Set during startup, shared by every handler thread.
BACKEND: Optional[IncusClient] = None
RECONCILER: Optional[MachineReconciler] = None
# Set on operator shutdown; aborts backend waits still running in handler threads.
STOPPING = threading.Event()

# ---------------------------------------------------------------------------
# Bootstrap helpers ----------------------------------------------------------
# ---------------------------------------------------------------------------


def _init_kubernetes_clients() -> tuple[CustomObjectsApi, ApiextensionsV1Api]:
    """Return (custom_objects, apiext) after loading kube config."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube‑config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in‑cluster kube‑config")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise kopf.PermanentError("Cannot load Kubernetes config") from exc

    return CustomObjectsApi(), ApiextensionsV1Api()


def _get_reconciler() -> MachineReconciler:
    if RECONCILER is None:
        raise kopf.TemporaryError("Reconciler not initialised yet", delay=CONFIG.requeue_delay)
    return RECONCILER


def _cancellation(stopped: Optional[object] = None) -> Cancellation:
    """Deadline for one reconcile pass, also tripped by shutdown or by kopf's *stopped* flag."""
    flags = (STOPPING,) if stopped is None else (STOPPING, stopped)
    return Cancellation.after(CONFIG.reconcile_timeout, *flags)


def _reconcile(
    namespace: Optional[str],
    name: str,
    logger: logging.Logger,
    retry: int = 0,
    cancel: Optional[Cancellation] = None,
) -> None:
    """Run one reconcile and translate its outcome into kopf's retry protocol."""
    reconciler = _get_reconciler()
    cancel = cancel or _cancellation()
    logger.debug(f"Reconciling IncusMachine '{namespace}/{name}' (Attempt #{retry})")
    try:
        result = reconciler.reconcile(namespace, name, cancel)
    except IncusError as exc:
        raise kopf.TemporaryError(
            f"Incus error for {namespace}/{name}: {exc}", delay=CONFIG.retry_delay
        ) from exc
    except ApiException as exc:
        logger.error(f"Kubernetes API error for IncusMachine '{namespace}/{name}': {exc.status} {exc.reason}")
        # A 409 means our read was stale; re-read soon rather than backing off.
        delay = CONFIG.requeue_delay if exc.status == 409 else CONFIG.retry_delay
        raise kopf.TemporaryError(
            f"API error for {namespace}/{name}: {exc.status} {exc.reason}", delay=delay
        ) from exc

    if result.requeue:
        raise kopf.TemporaryError(f"IncusMachine {namespace}/{name} requeued", delay=CONFIG.requeue_delay)


# ---------------------------------------------------------------------------
# Kopf handlers --------------------------------------------------------------
# ---------------------------------------------------------------------------


@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, **_: Dict[str, object]) -> None:
    """Tune watch timeouts and build the shared Incus client and reconciler."""
    global BACKEND, RECONCILER  # Declare modification intent
    STOPPING.clear()
    settings.watching.server_timeout = CONFIG.watch_server_timeout
    logger.info("Kopf watch server_timeout set to %s", settings.watching.server_timeout)

    custom_objects, apiext = _init_kubernetes_clients()
    if CONFIG.install_crds:
        ensure_crds(apiext)

    BACKEND = IncusClient(CONFIG.socket_path, operation_timeout=CONFIG.operation_timeout)
    RECONCILER = MachineReconciler(
        KubernetesObjectStore(custom_objects),
        BACKEND,
        default_image=CONFIG.default_image,
    )
    logger.info("IncusMachine reconciler ready (socket %s)", CONFIG.socket_path)


@kopf.on.cleanup()
def close_backend(**_: Dict[str, object]) -> None:
    """Release the Incus session on operator shutdown."""
    STOPPING.set()
    if BACKEND is not None:
        BACKEND.close()


@kopf.on.resume(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
@kopf.on.create(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
@kopf.on.update(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
def machine_reconcile(namespace: Optional[str], name: str, logger: kopf.Logger, retry: int = 0, **_: Dict[str, object]):
    """Converge the IncusMachine's backend instance toward its spec."""
    _reconcile(namespace, name, logger, retry)


@kopf.on.delete(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
def machine_delete(namespace: Optional[str], name: str, logger: kopf.Logger, retry: int = 0, **_: Dict[str, object]):
    """Remove the backend instance, then release the IncusMachine's finalizer."""
    logger.info(f"Handling deletion for IncusMachine '{namespace}/{name}'.")
    _reconcile(namespace, name, logger, retry)


@kopf.timer(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL, interval=CONFIG.resync_interval)
def machine_resync(
    namespace: Optional[str], name: str, logger: kopf.Logger, stopped: Optional[object] = None, **_: Dict[str, object]
):
    """Periodic resync: catches instances removed or created behind our back."""
    _reconcile(namespace, name, logger, cancel=_cancellation(stopped))
