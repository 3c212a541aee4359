"""Sync engine services.

This package intentionally avoids eager imports so that the pure modules
(translator, versioning) load without the database layer.
"""

from importlib import import_module

__all__ = [
    "AuditRecorder",
    "ConflictResolver",
    "ConnectionRegistry",
    "CredentialVault",
    "PatientIdentityMapper",
    "SyncEngine",
    "SyncOrchestrator",
    "SyncReporting",
    "SyncScheduler",
    "build_engine",
]

_LAZY_IMPORTS = {
    "AuditRecorder": ("fhirsync.services.audit", "AuditRecorder"),
    "ConflictResolver": ("fhirsync.services.conflicts", "ConflictResolver"),
    "ConnectionRegistry": ("fhirsync.services.connections", "ConnectionRegistry"),
    "CredentialVault": ("fhirsync.services.credentials", "CredentialVault"),
    "PatientIdentityMapper": ("fhirsync.services.identity", "PatientIdentityMapper"),
    "SyncEngine": ("fhirsync.services.engine", "SyncEngine"),
    "SyncOrchestrator": ("fhirsync.services.orchestrator", "SyncOrchestrator"),
    "SyncReporting": ("fhirsync.services.reporting", "SyncReporting"),
    "SyncScheduler": ("fhirsync.services.scheduler", "SyncScheduler"),
    "build_engine": ("fhirsync.services.engine", "build_engine"),
}


def __getattr__(name: str):
    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)
