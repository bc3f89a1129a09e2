"""Kopf operator that reconciles IncusMachine resources into Incus VM instances."""

__version__ = "0.1.0"
