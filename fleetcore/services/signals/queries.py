from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.core.errors import NotFoundError, UnexpectedError
from fleetcore.domain.models import Signal
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import signals as signals_repo


MAX_LIST_LIMIT = 500


async def get_signal(session: AsyncSession, tenant_id: str, signal_id: str) -> Signal:
    tenant_id = require_tenant_id(tenant_id)
    try:
        signal = await signals_repo.get_signal(session, tenant_id, signal_id)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load signal") from exc
    if signal is None:
        raise NotFoundError("signal not found")
    return signal


async def get_by_dedupe_key(session: AsyncSession, tenant_id: str, dedupe_key: str) -> Signal | None:
    tenant_id = require_tenant_id(tenant_id)
    try:
        return await signals_repo.get_by_dedupe_key(session, tenant_id, dedupe_key)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load signal") from exc


async def list_recent(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 50,
    names: list[str] | None = None,
) -> list[Signal]:
    # Newest first, clamped so an operator query cannot scan a whole partition.
    tenant_id = require_tenant_id(tenant_id)
    bounded = max(1, min(int(limit), MAX_LIST_LIMIT))
    try:
        return await signals_repo.list_signals(session, tenant_id, names=names, limit=bounded)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to list signals") from exc
