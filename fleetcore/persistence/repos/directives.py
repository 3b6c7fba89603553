from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.domain.models import Directive
from fleetcore.persistence.guards import tenant_predicate


async def get_directive(session: AsyncSession, tenant_id: str, directive_id: str) -> Directive | None:
    result = await session.execute(
        select(Directive).where(tenant_predicate(Directive, tenant_id), Directive.id == directive_id)
    )
    return result.scalar_one_or_none()


async def get_by_idempotency_key(
    session: AsyncSession, tenant_id: str, idempotency_key: str
) -> Directive | None:
    result = await session.execute(
        select(Directive).where(
            tenant_predicate(Directive, tenant_id),
            Directive.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def list_directives(
    session: AsyncSession,
    tenant_id: str,
    *,
    status: str | None = None,
    name: str | None = None,
    limit: int = 50,
) -> list[Directive]:
    stmt = select(Directive).where(tenant_predicate(Directive, tenant_id))
    if status:
        stmt = stmt.where(Directive.status == status)
    if name:
        stmt = stmt.where(Directive.name == name)
    stmt = stmt.order_by(Directive.inserted_at.desc(), Directive.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
