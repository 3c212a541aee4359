"""API routes for the FHIR sync engine."""

from fhirsync.api import audit, connections, health, mappings, sync

__all__ = [
    "audit",
    "connections",
    "health",
    "mappings",
    "sync",
]
