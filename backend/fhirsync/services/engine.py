"""Wiring of the sync components around one store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fhirsync.services.audit import AuditRecorder
from fhirsync.services.conflicts import ConflictResolver
from fhirsync.services.connections import ClientFactory, ConnectionRegistry, default_client_factory
from fhirsync.services.credentials import CredentialVault, TokenCache, TokenCipher
from fhirsync.services.identity import PatientIdentityMapper
from fhirsync.services.locks import CancellationRegistry, SingleFlight
from fhirsync.services.orchestrator import SyncOrchestrator
from fhirsync.services.reporting import SyncReporting
from fhirsync.services.store import SyncStore

# Process-wide state shared by every pass, request and scheduler worker.
_token_cache: TokenCache | None = None
_single_flight: SingleFlight | None = None
_cancellations: CancellationRegistry | None = None


def get_token_cache() -> TokenCache:
    global _token_cache
    if _token_cache is None:
        _token_cache = TokenCache()
    return _token_cache


def get_single_flight() -> SingleFlight:
    global _single_flight
    if _single_flight is None:
        _single_flight = SingleFlight()
    return _single_flight


def get_cancellations() -> CancellationRegistry:
    global _cancellations
    if _cancellations is None:
        _cancellations = CancellationRegistry()
    return _cancellations


@dataclass
class SyncEngine:
    store: SyncStore
    audit: AuditRecorder
    vault: CredentialVault
    registry: ConnectionRegistry
    identity: PatientIdentityMapper
    resolver: ConflictResolver
    orchestrator: SyncOrchestrator
    reporting: SyncReporting


def build_engine(
    store: SyncStore,
    *,
    client_factory: ClientFactory = default_client_factory,
    token_cache: Optional[TokenCache] = None,
    single_flight: Optional[SingleFlight] = None,
    cancellations: Optional[CancellationRegistry] = None,
    cipher: Optional[TokenCipher] = None,
) -> SyncEngine:
    token_cache = token_cache or get_token_cache()
    single_flight = single_flight or get_single_flight()
    cancellations = cancellations or get_cancellations()

    audit = AuditRecorder(store)
    vault = CredentialVault(store, audit, cache=token_cache, cipher=cipher)
    resolver = ConflictResolver(
        store,
        audit,
        vault,
        single_flight=single_flight,
        client_factory=client_factory,
    )
    return SyncEngine(
        store=store,
        audit=audit,
        vault=vault,
        registry=ConnectionRegistry(
            store,
            audit,
            vault,
            cancellations=cancellations,
            client_factory=client_factory,
        ),
        identity=PatientIdentityMapper(store, audit, vault, client_factory=client_factory),
        resolver=resolver,
        orchestrator=SyncOrchestrator(
            store,
            audit,
            vault,
            resolver,
            single_flight=single_flight,
            cancellations=cancellations,
            client_factory=client_factory,
        ),
        reporting=SyncReporting(store),
    )
