from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.domain.models import Signal
from fleetcore.persistence.guards import tenant_predicate


async def get_signal(session: AsyncSession, tenant_id: str, signal_id: str) -> Signal | None:
    # Return None for tenant mismatch so callers treat foreign ids as absent.
    result = await session.execute(
        select(Signal).where(tenant_predicate(Signal, tenant_id), Signal.id == signal_id)
    )
    return result.scalar_one_or_none()


async def get_by_dedupe_key(session: AsyncSession, tenant_id: str, dedupe_key: str) -> Signal | None:
    result = await session.execute(
        select(Signal).where(tenant_predicate(Signal, tenant_id), Signal.dedupe_key == dedupe_key)
    )
    return result.scalar_one_or_none()


async def list_signals(
    session: AsyncSession,
    tenant_id: str,
    *,
    names: list[str] | None = None,
    exclude_names: list[str] | None = None,
    signal_ids: list[str] | None = None,
    inserted_from: datetime | None = None,
    inserted_to: datetime | None = None,
    limit: int = 50,
) -> list[Signal]:
    # Newest first; ties broken by id so pagination stays stable.
    stmt = select(Signal).where(tenant_predicate(Signal, tenant_id))
    if names:
        stmt = stmt.where(Signal.name.in_(names))
    if exclude_names:
        stmt = stmt.where(Signal.name.not_in(exclude_names))
    if signal_ids is not None:
        stmt = stmt.where(Signal.id.in_(signal_ids))
    if inserted_from is not None:
        stmt = stmt.where(Signal.inserted_at >= inserted_from)
    if inserted_to is not None:
        stmt = stmt.where(Signal.inserted_at <= inserted_to)
    stmt = stmt.order_by(Signal.inserted_at.desc(), Signal.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
