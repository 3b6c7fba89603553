from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.domain.models import Installation
from fleetcore.persistence.guards import tenant_predicate


async def get_installation(
    session: AsyncSession, tenant_id: str, installation_id: str
) -> Installation | None:
    result = await session.execute(
        select(Installation).where(
            tenant_predicate(Installation, tenant_id),
            Installation.id == installation_id,
        )
    )
    return result.scalar_one_or_none()


async def get_by_slug(session: AsyncSession, tenant_id: str, package_slug: str) -> Installation | None:
    result = await session.execute(
        select(Installation).where(
            tenant_predicate(Installation, tenant_id),
            Installation.package_slug == package_slug,
        )
    )
    return result.scalar_one_or_none()


async def list_installations(session: AsyncSession, tenant_id: str) -> list[Installation]:
    result = await session.execute(
        select(Installation)
        .where(tenant_predicate(Installation, tenant_id))
        .order_by(Installation.inserted_at, Installation.id)
    )
    return list(result.scalars().all())
