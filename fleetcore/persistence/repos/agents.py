from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.domain.models import Agent
from fleetcore.persistence.guards import tenant_predicate


async def find_by_signature(
    session: AsyncSession, tenant_id: str, *, name: str, system_prompt: str
) -> Agent | None:
    result = await session.execute(
        select(Agent)
        .where(
            tenant_predicate(Agent, tenant_id),
            Agent.name == name,
            Agent.system_prompt == system_prompt,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_agents(session: AsyncSession, tenant_id: str) -> list[Agent]:
    result = await session.execute(
        select(Agent).where(tenant_predicate(Agent, tenant_id)).order_by(Agent.inserted_at, Agent.id)
    )
    return list(result.scalars().all())


async def create_agent(
    session: AsyncSession,
    tenant_id: str,
    *,
    name: str,
    system_prompt: str,
    description: str | None = None,
) -> Agent:
    agent = Agent(tenant_id=tenant_id, name=name, system_prompt=system_prompt, description=description)
    session.add(agent)
    await session.flush()
    return agent
