#!/usr/bin/env python3
"""Operator entry point: logging setup and ``kopf.run``."""

import logging
import os
import socket
import sys

import kopf

# Import our handlers so kopf registers them
from incus_operator.handlers import cluster, machine  # noqa: F401


def configure_logging(log_level: str = "INFO") -> None:
    """Configure logging with hostname and pod name for better traceability"""
    log_format = '%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s'

    # Add hostname to log format
    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    # Add custom fields to the log record
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)

    logging.info(f"Logging configured at {log_level} level")


def main() -> None:
    config = machine.CONFIG
    configure_logging(config.log_level)

    if config.watch_namespace:
        logging.info(f"Incus operator watching namespace {config.watch_namespace}")
    else:
        logging.info("Incus operator watching IncusMachine resources across all namespaces")

    # Standalone: a single replica, no peering resource required.
    kopf.run(
        standalone=True,
        clusterwide=not config.watch_namespace,
        namespaces=[config.watch_namespace] if config.watch_namespace else (),
    )


if __name__ == "__main__":
    main()
