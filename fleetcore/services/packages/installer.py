"""PackageInstaller: installs a published package's content into one tenant.

Runs from the ``install_package`` job against a tenant-scoped Installation
row. Retry-safe: agents are matched on their ``(name, system_prompt)``
signature before creation, so re-running after a partial failure converges on
the same rows. Failures are recorded on the Installation (and the Directive
sharing its idempotency key) before the error is propagated to the queue.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.core.errors import (
    NotFoundError,
    UnexpectedError,
    VersionMismatchError,
    error_message,
)
from fleetcore.domain.models import Installation, Package
from fleetcore.domain.state import DirectiveStatus, InstallationStatus
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import agents as agents_repo
from fleetcore.persistence.repos import directives as directives_repo
from fleetcore.persistence.repos import installations as installations_repo
from fleetcore.persistence.repos import packages as packages_repo
from fleetcore.services.best_effort import best_effort
from fleetcore.services.directives import lifecycle
from fleetcore.services.packages import installations
from fleetcore.services.queue import JobQueue
from fleetcore.services.signals.bus import emit, normalize_optional_string


logger = logging.getLogger(__name__)

InstallOutcome = Literal["discarded", "installed"]

SIGNAL_SOURCE = "package_installer"


def agent_signatures(package: Package) -> list[tuple[str, str, str | None]]:
    """Return ``(name, system_prompt, description)`` for each valid agent spec in the manifest."""
    specs = (package.includes or {}).get("agents") or []
    signatures: list[tuple[str, str, str | None]] = []
    for spec in specs if isinstance(specs, list) else [specs]:
        if not isinstance(spec, dict):
            continue
        name = spec.get("name")
        system_prompt = spec.get("system_prompt")
        if not isinstance(name, str) or not name.strip():
            logger.warning("installer_agent_spec_skipped package=%s reason=missing_name", package.slug)
            continue
        if not isinstance(system_prompt, str) or not system_prompt.strip():
            logger.warning("installer_agent_spec_skipped package=%s reason=missing_system_prompt", package.slug)
            continue
        signatures.append((name.strip(), system_prompt.strip(), normalize_optional_string(spec.get("description"))))
    return signatures


async def load_package_for(session: AsyncSession, *, slug: str, version: str | None) -> Package:
    # Packages join installations by slug+version, never by foreign key.
    try:
        package = await packages_repo.get_by_slug(session, slug)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load package") from exc
    if package is None:
        raise NotFoundError(f"package not found (slug={slug})")
    if version is not None and str(package.version) != str(version):
        raise VersionMismatchError(
            f"package version mismatch for slug={slug}: expected {version}, got {package.version}"
        )
    return package


class PackageInstaller:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue

    async def run(
        self,
        tenant_id: str,
        installation_id: str,
        *,
        job_metadata: dict[str, Any] | None = None,
    ) -> InstallOutcome:
        tenant_id = require_tenant_id(tenant_id)
        metadata = dict(job_metadata or {})
        async with self._session_factory() as session:
            installation = await self._load_installation(session, tenant_id, installation_id)
            if installation is None:
                logger.info(
                    "installer_discarded tenant=%s installation_id=%s reason=not_found",
                    tenant_id,
                    installation_id,
                )
                return "discarded"
            if installation.status == InstallationStatus.DISABLED.value or not installation.enabled:
                logger.info(
                    "installer_discarded tenant=%s installation_id=%s reason=disabled",
                    tenant_id,
                    installation_id,
                )
                return "discarded"

            # Capture identity up front; failed commits expire ORM state.
            slug = installation.package_slug
            version = installation.package_version
            idempotency_key = installation.idempotency_key

            await self._emit(
                tenant_id,
                "package.installation.started",
                {"installation_id": installation_id, "package_slug": slug, "package_version": version},
                f"package_installation_started:{tenant_id}:{installation_id}",
                metadata,
            )
            try:
                await installations.mark_installing(session, installation)
                await self._emit(
                    tenant_id,
                    "package.installation.installing",
                    {
                        "installation_id": installation_id,
                        "package_slug": slug,
                        "package_version": version,
                        "status": installation.status,
                    },
                    f"package_installation_installing:{tenant_id}:{installation_id}",
                    metadata,
                )
                package = await load_package_for(session, slug=slug, version=version)
                created_agents = await self._install_agents(session, tenant_id, package)
                self._skip_unsupported(package, "workflows")
                self._skip_unsupported(package, "skills")
                await installations.mark_installed(session, installation)
            except Exception as exc:
                await session.rollback()
                await self._fail(
                    tenant_id,
                    installation_id,
                    slug=slug,
                    version=version,
                    idempotency_key=idempotency_key,
                    exc=exc,
                    metadata=metadata,
                )
                raise

            installed_at = installation.installed_at
            package_id = package.id
            package_ref = {"slug": package.slug, "version": package.version}

        logger.info(
            "installer_installed tenant=%s installation_id=%s package=%s@%s agents_created=%s",
            tenant_id,
            installation_id,
            package_ref["slug"],
            package_ref["version"],
            created_agents,
        )
        await best_effort(
            "package.install_count",
            self._bump_install_count(package_id),
            package=package_ref["slug"],
        )
        await best_effort(
            "installer.directive_succeeded",
            self._link_directive(
                tenant_id,
                idempotency_key,
                succeeded=True,
                result={
                    "type": "package.install",
                    "installation_id": installation_id,
                    "package": package_ref,
                    "status": InstallationStatus.INSTALLED.value,
                },
            ),
            tenant=tenant_id,
            installation_id=installation_id,
        )
        await self._emit(
            tenant_id,
            "package.installation.installed",
            {
                "installation_id": installation_id,
                "package": package_ref,
                "status": InstallationStatus.INSTALLED.value,
                "installed_at": installed_at.isoformat() if installed_at else None,
            },
            f"package_installation_installed:{tenant_id}:{installation_id}",
            metadata,
        )
        return "installed"

    async def _load_installation(
        self, session: AsyncSession, tenant_id: str, installation_id: str
    ) -> Installation | None:
        try:
            return await installations_repo.get_installation(session, tenant_id, installation_id)
        except SQLAlchemyError as exc:
            raise UnexpectedError("failed to load installation") from exc

    async def _install_agents(self, session: AsyncSession, tenant_id: str, package: Package) -> int:
        created = 0
        try:
            for name, system_prompt, description in agent_signatures(package):
                existing = await agents_repo.find_by_signature(
                    session, tenant_id, name=name, system_prompt=system_prompt
                )
                if existing is not None:
                    continue
                await agents_repo.create_agent(
                    session, tenant_id, name=name, system_prompt=system_prompt, description=description
                )
                created += 1
            await session.commit()
        except SQLAlchemyError as exc:
            raise UnexpectedError("failed to install package agents") from exc
        return created

    def _skip_unsupported(self, package: Package, kind: str) -> None:
        items = (package.includes or {}).get(kind) or []
        if items:
            logger.info(
                "installer_content_skipped package=%s@%s kind=%s count=%s",
                package.slug,
                package.version,
                kind,
                len(items) if isinstance(items, list) else 1,
            )

    async def _fail(
        self,
        tenant_id: str,
        installation_id: str,
        *,
        slug: str,
        version: str,
        idempotency_key: str | None,
        exc: BaseException,
        metadata: dict[str, Any],
    ) -> None:
        message = error_message(exc)
        logger.warning(
            "installer_failed tenant=%s installation_id=%s error=%s",
            tenant_id,
            installation_id,
            message,
        )
        await self._emit(
            tenant_id,
            "package.installation.failed",
            {
                "installation_id": installation_id,
                "package_slug": slug,
                "package_version": version,
                "error": message,
            },
            f"package_installation_failed:{tenant_id}:{installation_id}",
            metadata,
        )
        await best_effort(
            "installer.record_failure",
            self._record_failure(tenant_id, installation_id, message),
            tenant=tenant_id,
            installation_id=installation_id,
        )
        await best_effort(
            "installer.directive_failed",
            self._link_directive(tenant_id, idempotency_key, succeeded=False, error=message),
            tenant=tenant_id,
            installation_id=installation_id,
        )

    async def _record_failure(self, tenant_id: str, installation_id: str, message: str) -> None:
        async with self._session_factory() as session:
            installation = await installations_repo.get_installation(session, tenant_id, installation_id)
            if installation is not None:
                await installations.mark_failed(session, installation, error=message)

    async def _bump_install_count(self, package_id: str) -> None:
        async with self._session_factory() as session:
            await packages_repo.increment_install_count(session, package_id)
            await session.commit()

    async def _link_directive(
        self,
        tenant_id: str,
        idempotency_key: str | None,
        *,
        succeeded: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        # The Directive that requested this install shares its idempotency key.
        key = normalize_optional_string(idempotency_key)
        if key is None:
            return
        async with self._session_factory() as session:
            directive = await directives_repo.get_by_idempotency_key(session, tenant_id, key)
            if directive is None or directive.status == DirectiveStatus.CANCELED.value:
                return
            if succeeded:
                await lifecycle.mark_succeeded(session, directive, result=result, override=True)
            else:
                await lifecycle.mark_failed(session, directive, error=error, override=True)

    async def _emit(
        self,
        tenant_id: str,
        name: str,
        payload: dict[str, Any],
        dedupe_key: str,
        metadata: dict[str, Any],
    ) -> None:
        async def _do_emit() -> None:
            async with self._session_factory() as session:
                await emit(
                    session,
                    tenant_id,
                    name,
                    payload,
                    metadata=metadata,
                    dedupe_key=dedupe_key,
                    subject={"type": "package.installation", "id": payload.get("installation_id")},
                    source=SIGNAL_SOURCE,
                    queue=self._queue,
                )

        await best_effort(name, _do_emit(), tenant=tenant_id)
