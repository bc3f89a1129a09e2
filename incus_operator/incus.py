"""
incus.py
--------
Backend client for the Incus daemon.

``InstanceBackend`` is the capability set the reconciler consumes;
``IncusClient`` implements it over the Incus REST API (``/1.0``) on the local
unix socket using ``httpx``. Every mutating call submits a request and then
blocks on the daemon's asynchronous operation until it completes or the
operation timeout elapses. There are no retries in here: retrying is the job
of whoever delivers reconcile requests.

Each call takes an optional :class:`Cancellation` from the caller. Operation
waits are polled in short slices so a stop flag, an expired deadline or
:meth:`IncusClient.close` aborts a wait that is already in flight.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Dict, Optional, Protocol

import httpx

from incus_operator.config import DEFAULT_SOCKET_PATH

logger = logging.getLogger(__name__)

API_PREFIX = "/1.0"
BASE_URL = "http://incus"
REQUEST_TIMEOUT = 30.0
# Longest single ``/wait`` request; bounds how late a cancellation is noticed.
WAIT_SLICE = 5.0

# Public image servers addressable as ``<remote>:<alias>``.
KNOWN_REMOTES: Dict[str, str] = {
    "images": "https://images.linuxcontainers.org",
}


# ---------------------------------------------------------------------------
# Errors ---------------------------------------------------------------------
# ---------------------------------------------------------------------------
class IncusError(Exception):
    """Base class for every failure surfaced by the backend client."""


class IncusConnectionError(IncusError):
    """The daemon is unreachable or the session handshake failed."""


class IncusAPIError(IncusError):
    """The daemon answered with an error or an operation failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IncusCreateError(IncusError):
    """Instance creation was rejected or its provisioning operation failed."""


class IncusDeleteError(IncusError):
    """Instance deletion was rejected or its operation failed."""


class IncusCancelledError(IncusError):
    """The caller's stop flag was raised or its deadline passed."""


# ---------------------------------------------------------------------------
# Cancellation ---------------------------------------------------------------
# ---------------------------------------------------------------------------
class Cancellation:
    """Deadline and stop flags a caller threads through backend calls.

    *deadline* is a :func:`time.monotonic` value. A flag is anything with an
    ``is_set()`` method: a :class:`threading.Event`, or the ``stopped`` kwarg
    kopf hands to timers.
    """

    def __init__(self, deadline: Optional[float] = None, *flags: Any):
        self.deadline = deadline
        self.flags = flags

    @classmethod
    def after(cls, seconds: float, *flags: Any) -> "Cancellation":
        return cls(time.monotonic() + seconds, *flags)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def cancelled(self) -> bool:
        return any(flag.is_set() for flag in self.flags)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str) -> None:
        if self.cancelled():
            raise IncusCancelledError(f"{what}: cancelled")
        if self.expired():
            raise IncusCancelledError(f"{what}: deadline exceeded")


NEVER = Cancellation()


# ---------------------------------------------------------------------------
# Contract -------------------------------------------------------------------
# ---------------------------------------------------------------------------
class InstanceBackend(Protocol):
    def connect(self, cancel: Cancellation = NEVER) -> None: ...

    def create_instance(
        self,
        name: str,
        image: str,
        cpus: int,
        memory_mib: int,
        root_disk_size_gib: int,
        cancel: Cancellation = NEVER,
    ) -> None: ...

    def delete_instance(self, name: str, cancel: Cancellation = NEVER) -> None: ...

    def instance_exists(self, name: str, cancel: Cancellation = NEVER) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Request body helpers -------------------------------------------------------
# ---------------------------------------------------------------------------
def image_source(image: str) -> Dict[str, Any]:
    """Translate an image reference into an Incus instance ``source``.

    ``images:ubuntu/24.04`` pulls ``ubuntu/24.04`` from the public simplestreams
    server; anything else is looked up as a local alias.
    """
    remote, sep, alias = image.partition(":")
    if sep and remote in KNOWN_REMOTES:
        return {
            "type": "image",
            "alias": alias,
            "server": KNOWN_REMOTES[remote],
            "protocol": "simplestreams",
            "mode": "pull",
        }
    return {"type": "image", "alias": image}


def build_instance_request(
    name: str, image: str, cpus: int, memory_mib: int, root_disk_size_gib: int
) -> Dict[str, Any]:
    """Body for ``POST /1.0/instances``. Values are used verbatim, no defaulting."""
    body: Dict[str, Any] = {
        "name": name,
        "type": "virtual-machine",
        "config": {
            "limits.cpu": str(cpus),
            "limits.memory": f"{memory_mib}MiB",
            "security.secureboot": "false",
        },
        "profiles": ["default"],
        "source": image_source(image),
        "start": True,
    }
    if root_disk_size_gib > 0:
        body["devices"] = {
            "root": {
                "type": "disk",
                "pool": "default",
                "path": "/",
                "size": f"{root_disk_size_gib}GiB",
            }
        }
    return body


# ---------------------------------------------------------------------------
# Client ---------------------------------------------------------------------
# ---------------------------------------------------------------------------
class IncusClient:
    """Lazily connected, thread-safe session with the Incus daemon."""

    def __init__(
        self,
        socket_path: Optional[str] = None,
        operation_timeout: float = 600.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.socket_path = socket_path or DEFAULT_SOCKET_PATH
        self.operation_timeout = operation_timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    # -- session -----------------------------------------------------------
    def connect(self, cancel: Cancellation = NEVER) -> None:
        cancel.check("connect to Incus")
        if self._client is not None:
            return
        with self._lock:
            if self._client is not None:
                return
            transport = self._transport or httpx.HTTPTransport(uds=self.socket_path)
            client = httpx.Client(transport=transport, base_url=BASE_URL, timeout=REQUEST_TIMEOUT)
            try:
                server = self._send(client, "GET", API_PREFIX, timeout=_capped(REQUEST_TIMEOUT, cancel))
            except IncusError as exc:
                client.close()
                if cancel.expired():
                    raise IncusCancelledError(f"connect to Incus: deadline exceeded ({exc})") from exc
                raise IncusConnectionError(
                    f"failed to connect to Incus at {self.socket_path}: {exc}"
                ) from exc
            self._client = client
            logger.info(
                "Connected to Incus %s at %s",
                (server.get("environment") or {}).get("server_version", "?"),
                self.socket_path,
            )

    def close(self) -> None:
        """Drop the session. A wait in progress on another thread aborts at its next slice."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()
            logger.debug("Closed Incus session at %s", self.socket_path)

    # -- instances ---------------------------------------------------------
    def create_instance(
        self,
        name: str,
        image: str,
        cpus: int,
        memory_mib: int,
        root_disk_size_gib: int,
        cancel: Cancellation = NEVER,
    ) -> None:
        self.connect(cancel)
        body = build_instance_request(name, image, cpus, memory_mib, root_disk_size_gib)
        try:
            operation = self._submit("POST", f"{API_PREFIX}/instances", cancel, json=body)
            self._wait(operation, cancel)
        except IncusError as exc:
            raise IncusCreateError(f"failed to create instance {name}: {exc}") from exc
        logger.debug("Instance %s provisioned from %s", name, image)

    def delete_instance(self, name: str, cancel: Cancellation = NEVER) -> None:
        self.connect(cancel)
        path = f"{API_PREFIX}/instances/{name}"
        try:
            state = self._request("GET", f"{path}/state", cancel)
            if state.get("status") not in (None, "Stopped"):
                # Incus refuses to delete a running instance.
                logger.debug("Force-stopping instance %s (%s)", name, state.get("status"))
                operation = self._submit(
                    "PUT", f"{path}/state", cancel, json={"action": "stop", "force": True, "timeout": -1}
                )
                self._wait(operation, cancel)
            self._wait(self._submit("DELETE", path, cancel), cancel)
        except IncusError as exc:
            raise IncusDeleteError(f"failed to delete instance {name}: {exc}") from exc
        logger.debug("Instance %s deleted", name)

    def instance_exists(self, name: str, cancel: Cancellation = NEVER) -> bool:
        self.connect(cancel)
        try:
            self._request("GET", f"{API_PREFIX}/instances/{name}", cancel)
        except IncusAPIError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    # -- plumbing ----------------------------------------------------------
    def _request(
        self, method: str, path: str, cancel: Cancellation = NEVER, envelope: bool = False, **kwargs: Any
    ) -> Any:
        """Perform a request within the caller's budget.

        Returns the response ``metadata``, or the whole envelope if asked to.
        """
        cancel.check(f"{method} {path}")
        client = self._client
        if client is None:
            raise IncusConnectionError("Incus session closed")
        kwargs["timeout"] = _capped(kwargs.get("timeout", REQUEST_TIMEOUT), cancel)
        try:
            return self._send(client, method, path, envelope=envelope, **kwargs)
        except IncusConnectionError as exc:
            if cancel.expired():
                raise IncusCancelledError(f"{method} {path}: deadline exceeded") from exc
            raise

    def _submit(self, method: str, path: str, cancel: Cancellation = NEVER, **kwargs: Any) -> str:
        """Perform a request answered asynchronously; return the operation path."""
        envelope = self._request(method, path, cancel, envelope=True, **kwargs)
        operation = envelope.get("operation")
        if envelope.get("type") != "async" or not operation:
            raise IncusAPIError(f"{method} {path}: expected an async operation, got {envelope.get('type')!r}")
        return operation

    def _wait(self, operation: str, cancel: Cancellation = NEVER) -> None:
        """Poll ``/wait`` in slices until the operation settles or the budget runs out."""
        budget = self.operation_timeout
        while True:
            seconds = min(WAIT_SLICE, budget)
            remaining = cancel.remaining()
            if remaining is not None:
                seconds = min(seconds, remaining)
            seconds = max(1, math.ceil(seconds))

            result = self._request(
                "GET",
                f"{operation}/wait",
                cancel,
                params={"timeout": seconds},
                timeout=seconds + REQUEST_TIMEOUT,
            )
            status = result.get("status")
            if status == "Success":
                return
            if status not in ("Running", "Pending"):
                raise IncusAPIError(
                    f"operation {operation} {status}: {result.get('err') or 'no detail'}",
                    status_code=result.get("status_code"),
                )
            budget -= seconds
            if budget <= 0:
                raise IncusAPIError(f"operation {operation} still {status} after {self.operation_timeout:g}s")

    @staticmethod
    def _send(client: httpx.Client, method: str, path: str, envelope: bool = False, **kwargs: Any) -> Any:
        try:
            response = client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise IncusConnectionError(f"{method} {path}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise IncusAPIError(
                f"{method} {path}: invalid response ({response.status_code})",
                status_code=response.status_code,
            )

        if payload.get("type") == "error" or response.status_code >= 400:
            raise IncusAPIError(
                f"{method} {path}: {payload.get('error') or response.reason_phrase}",
                status_code=payload.get("error_code") or response.status_code,
            )
        return payload if envelope else payload.get("metadata") or {}


def _capped(timeout: float, cancel: Cancellation) -> float:
    """*timeout* shortened so an HTTP request never outlives the caller's deadline."""
    remaining = cancel.remaining()
    if remaining is None:
        return timeout
    return max(min(timeout, remaining), 0.001)
