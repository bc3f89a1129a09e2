"""
config.py
---------
Environment-driven operator configuration.

``.env`` is loaded *early* (on import) so local development works the same way
as an in-cluster deployment where everything comes from the pod environment.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_IMAGE = "images:ubuntu/24.04"
DEFAULT_SOCKET_PATH = "/var/lib/incus/unix.socket"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True)
class OperatorConfig:
    incus_socket: Optional[str] = None
    default_image: str = DEFAULT_IMAGE
    operation_timeout: float = 600.0
    retry_delay: float = 15.0
    requeue_delay: float = 1.0
    resync_interval: float = 300.0
    reconcile_timeout: float = 900.0
    watch_server_timeout: int = 210
    watch_namespace: Optional[str] = None
    install_crds: bool = False
    log_level: str = "INFO"

    @property
    def socket_path(self) -> str:
        """Unix socket of the Incus daemon, honouring the endpoint override."""
        return self.incus_socket or DEFAULT_SOCKET_PATH


def _number(env: Mapping[str, str], key: str, default: float, cast=float, minimum: float = 0):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{key}={raw!r} is not a valid number") from exc
    if not math.isfinite(value):
        raise ConfigError(f"{key}={raw!r} must be a finite number")
    if value < minimum:
        raise ConfigError(f"{key}={raw!r} must be at least {minimum}")
    return value


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{key}={raw!r} is not a boolean")


def _socket(env: Mapping[str, str]) -> Optional[str]:
    if env.get("INCUS_SOCKET"):
        return env["INCUS_SOCKET"]
    if env.get("INCUS_DIR"):
        return os.path.join(env["INCUS_DIR"], "unix.socket")
    return None


def load_config(env: Optional[Mapping[str, str]] = None) -> OperatorConfig:
    """Build an :class:`OperatorConfig` from *env* (defaults to ``os.environ``)."""
    env = os.environ if env is None else env
    config = OperatorConfig(
        incus_socket=_socket(env),
        default_image=env.get("INCUS_DEFAULT_IMAGE") or DEFAULT_IMAGE,
        operation_timeout=_number(env, "INCUS_OPERATION_TIMEOUT", 600.0, minimum=1),
        retry_delay=_number(env, "RECONCILE_RETRY_DELAY", 15.0),
        requeue_delay=_number(env, "RECONCILE_REQUEUE_DELAY", 1.0),
        resync_interval=_number(env, "RECONCILE_RESYNC_INTERVAL", 300.0, minimum=1),
        reconcile_timeout=_number(env, "RECONCILE_TIMEOUT", 900.0, minimum=1),
        watch_server_timeout=_number(env, "WATCH_SERVER_TIMEOUT", 210, cast=int),
        watch_namespace=env.get("WATCH_NAMESPACE") or None,
        install_crds=_flag(env, "INSTALL_CRDS", False),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
    logger.debug("Loaded operator config: %s", config)
    return config
