from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from franchisecore.core.config import get_settings
from franchisecore.persistence.db import sql_store_scope
from franchisecore.persistence.memory import InMemoryStore
from franchisecore.persistence.store import RecordStore, StoreFactory
from franchisecore.services.franchise import FranchiseService


class Principal(BaseModel):
    # Identity asserted by the upstream identity provider; all calls are tenant-scoped.
    subject_id: str
    tenant_id: str


_memory_store: InMemoryStore | None = None


def get_memory_store() -> InMemoryStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = InMemoryStore()
    return _memory_store


def reset_memory_store() -> None:
    # Drop process-local demo data for deterministic tests.
    global _memory_store
    _memory_store = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_principal(request: Request) -> Principal:
    settings = get_settings()
    subject_id = (request.headers.get(settings.subject_header) or "").strip()
    tenant_id = (request.headers.get(settings.tenant_header) or "").strip()
    if not subject_id:
        raise _auth_error(f"Missing {settings.subject_header} header")
    if not tenant_id:
        raise _auth_error(f"Missing {settings.tenant_header} header")
    return Principal(subject_id=subject_id, tenant_id=tenant_id)


async def get_store() -> AsyncGenerator[RecordStore, None]:
    # One store (and session) per request; the scope closes it on success or error.
    if get_settings().store_backend == "memory":
        yield get_memory_store()
        return
    async with sql_store_scope() as store:
        yield store


def get_store_factory() -> StoreFactory:
    if get_settings().store_backend == "memory":
        return get_memory_store().scope
    return sql_store_scope


async def get_franchise_service(
    principal: Principal = Depends(get_principal),
    store: RecordStore = Depends(get_store),
    store_factory: StoreFactory = Depends(get_store_factory),
) -> FranchiseService:
    return FranchiseService(store, principal.tenant_id, store_factory=store_factory)
