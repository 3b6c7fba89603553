from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.domain.models import Package


async def get_by_slug(session: AsyncSession, slug: str) -> Package | None:
    # Packages are global; no tenant predicate applies.
    result = await session.execute(select(Package).where(Package.slug == slug))
    return result.scalar_one_or_none()


async def increment_install_count(session: AsyncSession, package_id: str) -> None:
    # Single-statement increment so concurrent installs do not lose updates.
    await session.execute(
        update(Package)
        .where(Package.id == package_id)
        .values(install_count=Package.install_count + 1)
    )
