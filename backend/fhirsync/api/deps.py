"""Shared API dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from fhirsync.config import settings
from fhirsync.database import get_db
from fhirsync.services.audit import Actor
from fhirsync.services.connections import ClientFactory, default_client_factory
from fhirsync.services.engine import SyncEngine, build_engine
from fhirsync.services.store import SQLSyncStore, SyncStore

security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """Actor from a platform-issued JWT carrying ``sub``, ``tenant_id`` and ``role``."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise credentials_exception

    subject: str | None = payload.get("sub")
    tenant_id: str | None = payload.get("tenant_id")
    token_type: str | None = payload.get("type")
    if not subject or not tenant_id:
        raise credentials_exception
    if token_type and token_type != "access":
        raise credentials_exception
    return Actor(
        actor_type="user",
        actor_id=str(subject),
        tenant_id=str(tenant_id),
        role=payload.get("role"),
    )


async def require_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Require the administrator role. Use for every mutating endpoint."""
    if actor.role != settings.admin_role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return actor


async def get_store(db: Annotated[AsyncSession, Depends(get_db)]) -> SyncStore:
    return SQLSyncStore(db)


def get_client_factory() -> ClientFactory:
    return default_client_factory


async def get_engine(
    store: Annotated[SyncStore, Depends(get_store)],
    client_factory: Annotated[ClientFactory, Depends(get_client_factory)],
) -> SyncEngine:
    return build_engine(store, client_factory=client_factory)

