"""Static dispatch table from directive name to handler coroutine.

Handlers receive a ``DirectiveContext`` and return the result map stored on
the Directive. They must be idempotent: the runner may invoke them more than
once for the same directive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.core.errors import UnexpectedError, ValidationError, VersionMismatchError
from fleetcore.domain.models import Directive
from fleetcore.domain.state import InstallationStatus
from fleetcore.persistence.repos import agents as agents_repo
from fleetcore.persistence.repos import packages as packages_repo
from fleetcore.services.best_effort import best_effort
from fleetcore.services.packages import installations
from fleetcore.services.packages.installer import agent_signatures, load_package_for
from fleetcore.services.queue import INSTALL_PACKAGE_JOB, JobQueue, get_job_queue, truthy
from fleetcore.services.signals.bus import emit, normalize_optional_string


logger = logging.getLogger(__name__)

# Installations in these statuses already have (or refuse) installer work.
_NO_ENQUEUE_STATUSES = frozenset(
    {
        InstallationStatus.INSTALLED.value,
        InstallationStatus.INSTALLING.value,
        InstallationStatus.DISABLED.value,
    }
)


@dataclass
class DirectiveContext:
    tenant_id: str
    directive: Directive
    session: AsyncSession
    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue | None = None

    @property
    def job_queue(self) -> JobQueue:
        return self.queue or get_job_queue()


DirectiveHandler = Callable[[DirectiveContext], Awaitable[dict[str, Any]]]


def _payload_slug(directive: Directive) -> str:
    slug = normalize_optional_string((directive.payload or {}).get("slug"))
    if slug is None:
        raise ValidationError(f"{directive.name} requires payload.slug")
    return slug


async def _emit_processed(
    context: DirectiveContext,
    name: str,
    payload: dict[str, Any],
    *,
    installation_id: str,
) -> None:
    directive = context.directive

    async def _do_emit() -> None:
        async with context.session_factory() as session:
            await emit(
                session,
                context.tenant_id,
                name,
                payload,
                dedupe_key=f"{name}:{context.tenant_id}:{installation_id}:{directive.id}",
                actor={"type": "user", "id": directive.requested_by_user_id}
                if directive.requested_by_user_id
                else None,
                subject={"type": "package.installation", "id": installation_id},
                source="directive_runner",
                queue=context.queue,
            )

    await best_effort(name, _do_emit(), tenant=context.tenant_id, directive_id=directive.id)


async def handle_package_install(context: DirectiveContext) -> dict[str, Any]:
    # Converge on one Installation per slug, then hand the install work to the installer job.
    directive = context.directive
    payload = directive.payload or {}
    slug = _payload_slug(directive)
    requested_version = normalize_optional_string(payload.get("version"))
    config = payload.get("config") if isinstance(payload.get("config"), dict) else {}

    package = await load_package_for(context.session, slug=slug, version=requested_version)
    if not package.is_published:
        raise ValidationError(f"package is not published (slug={slug})")

    installed_by = directive.requested_by_user_id or normalize_optional_string(
        (directive.metadata_json or {}).get("requested_by_user_id")
    )
    installation, marker = await installations.request_install(
        context.session,
        context.tenant_id,
        package=package,
        installed_by_user_id=installed_by,
        config=config,
        idempotency_key=directive.idempotency_key,
    )

    enqueued = False
    if installation.status not in _NO_ENQUEUE_STATUSES:
        try:
            await context.job_queue.enqueue(
                INSTALL_PACKAGE_JOB,
                tenant=context.tenant_id,
                installation_id=installation.id,
            )
        except Exception as exc:
            raise UnexpectedError("failed to enqueue package installer") from exc
        enqueued = True
        logger.info(
            "package_install_enqueued tenant=%s installation_id=%s slug=%s",
            context.tenant_id,
            installation.id,
            slug,
        )

    package_ref = {"slug": package.slug, "version": package.version}
    await _emit_processed(
        context,
        "package.install.processed",
        {
            "directive_id": directive.id,
            "package": package_ref,
            "installation": {
                "id": installation.id,
                "status": installation.status,
                "created": marker == "created",
            },
            "enqueued": enqueued,
        },
        installation_id=installation.id,
    )
    return {
        "type": "package.install",
        "package": package_ref,
        "installation_id": installation.id,
        "installation_status": installation.status,
        "installation_created": marker == "created",
        "enqueued": enqueued,
        "tenant": context.tenant_id,
    }


async def _purge_agents(context: DirectiveContext, *, slug: str, version: str) -> int:
    # Remove agents whose (name, system_prompt) signature matches the package manifest.
    async with context.session_factory() as session:
        package = await packages_repo.get_by_slug(session, slug)
        if package is None or str(package.version) != str(version):
            return 0
        signatures = {(name, prompt) for name, prompt, _ in agent_signatures(package)}
        if not signatures:
            return 0
        purged = 0
        for agent in await agents_repo.list_agents(session, context.tenant_id):
            if (agent.name, agent.system_prompt) in signatures:
                await session.delete(agent)
                purged += 1
        await session.commit()
        return purged


async def handle_package_uninstall(context: DirectiveContext) -> dict[str, Any]:
    directive = context.directive
    payload = directive.payload or {}
    slug = _payload_slug(directive)
    requested_version = normalize_optional_string(payload.get("version"))
    purge = any(truthy(payload.get(flag)) for flag in ("purge", "purge_agents", "purge_content"))

    installation = await installations.find_by_slug(context.session, context.tenant_id, slug)
    if installation is None:
        return {
            "type": "package.uninstall",
            "package": {"slug": slug, "version": requested_version},
            "uninstalled": False,
            "purged_agents": 0,
            "reason": "not_installed",
            "tenant": context.tenant_id,
        }
    if requested_version is not None and str(installation.package_version) != requested_version:
        raise VersionMismatchError(
            f"package version mismatch for uninstall slug={slug}: "
            f"expected {installation.package_version}, got {requested_version}"
        )

    installation_id = installation.id
    version = installation.package_version
    purged_agents = 0
    if purge:
        purged_agents = (
            await best_effort(
                "package.uninstall.purge_agents",
                _purge_agents(context, slug=slug, version=version),
                tenant=context.tenant_id,
                slug=slug,
            )
            or 0
        )
    await installations.remove(context.session, installation)
    logger.info(
        "package_uninstalled tenant=%s installation_id=%s slug=%s purged_agents=%s",
        context.tenant_id,
        installation_id,
        slug,
        purged_agents,
    )

    package_ref = {"slug": slug, "version": version}
    await _emit_processed(
        context,
        "package.uninstall.processed",
        {
            "directive_id": directive.id,
            "package": package_ref,
            "installation_id": installation_id,
            "purged_agents": purged_agents,
        },
        installation_id=installation_id,
    )
    return {
        "type": "package.uninstall",
        "package": package_ref,
        "installation_id": installation_id,
        "uninstalled": True,
        "purged_agents": purged_agents,
        "tenant": context.tenant_id,
    }


DIRECTIVE_HANDLERS: dict[str, DirectiveHandler] = {
    "package.install": handle_package_install,
    "package.uninstall": handle_package_uninstall,
}

