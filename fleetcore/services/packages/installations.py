from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.core.errors import NotFoundError, UnexpectedError
from fleetcore.domain.models import Installation, Package
from fleetcore.domain.state import InstallationStatus, InstallationTransition, installation_transition
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import installations as installations_repo
from fleetcore.services.signals.bus import ensure_json_safe, normalize_optional_string


logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Installation failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _commit(session: AsyncSession, message: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise UnexpectedError(message) from exc


async def get_installation(session: AsyncSession, tenant_id: str, installation_id: str) -> Installation:
    tenant_id = require_tenant_id(tenant_id)
    try:
        installation = await installations_repo.get_installation(session, tenant_id, installation_id)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load installation") from exc
    if installation is None:
        raise NotFoundError("installation not found")
    return installation


async def find_by_slug(session: AsyncSession, tenant_id: str, package_slug: str) -> Installation | None:
    tenant_id = require_tenant_id(tenant_id)
    try:
        return await installations_repo.get_by_slug(session, tenant_id, package_slug)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load installation") from exc


async def list_installations(session: AsyncSession, tenant_id: str) -> list[Installation]:
    tenant_id = require_tenant_id(tenant_id)
    try:
        return await installations_repo.list_installations(session, tenant_id)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to list installations") from exc


async def request_install(
    session: AsyncSession,
    tenant_id: str,
    *,
    package: Package,
    installed_by_user_id: str | None = None,
    config: Mapping[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> tuple[Installation, Literal["created", "existing"]]:
    """Look up the tenant's installation of ``package`` by slug, creating it if absent.

    Keyed by slug so retries after a partial failure converge on one row.
    """
    tenant_id = require_tenant_id(tenant_id)
    existing = await find_by_slug(session, tenant_id, package.slug)
    if existing is not None:
        return existing, "existing"

    config_map = dict(config or {})
    ensure_json_safe(config_map, field="config", reject_secrets=False)
    installation = Installation(
        tenant_id=tenant_id,
        package_slug=package.slug,
        package_version=package.version,
        package_name=package.name,
        status=InstallationStatus.REQUESTED.value,
        enabled=True,
        installed_by_user_id=normalize_optional_string(installed_by_user_id),
        config=config_map,
        idempotency_key=normalize_optional_string(idempotency_key),
    )
    session.add(installation)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        winner = await find_by_slug(session, tenant_id, package.slug)
        if winner is None:
            raise UnexpectedError("installation insert violated a constraint") from exc
        return winner, "existing"
    except SQLAlchemyError as exc:
        await session.rollback()
        raise UnexpectedError("failed to persist installation") from exc
    logger.info(
        "installation_requested tenant=%s installation_id=%s slug=%s",
        tenant_id,
        installation.id,
        installation.package_slug,
    )
    return installation, "created"


async def mark_installing(session: AsyncSession, installation: Installation) -> Installation:
    target = installation_transition(installation.status, InstallationTransition.MARK_INSTALLING)
    installation.status = target.value
    await _commit(session, "failed to mark installation installing")
    return installation


async def mark_installed(session: AsyncSession, installation: Installation) -> Installation:
    target = installation_transition(installation.status, InstallationTransition.MARK_INSTALLED)
    installation.status = target.value
    installation.enabled = True
    installation.installed_at = _utc_now()
    installation.last_error = None
    installation.last_error_at = None
    await _commit(session, "failed to mark installation installed")
    return installation


async def mark_failed(session: AsyncSession, installation: Installation, *, error: str | None = None) -> Installation:
    target = installation_transition(installation.status, InstallationTransition.MARK_FAILED)
    installation.status = target.value
    installation.last_error = normalize_optional_string(error) or DEFAULT_FAILURE_MESSAGE
    installation.last_error_at = _utc_now()
    await _commit(session, "failed to mark installation failed")
    return installation


async def disable(session: AsyncSession, installation: Installation) -> Installation:
    target = installation_transition(installation.status, InstallationTransition.DISABLE)
    installation.status = target.value
    installation.enabled = False
    await _commit(session, "failed to disable installation")
    return installation


async def enable(session: AsyncSession, installation: Installation) -> Installation:
    target = installation_transition(
        installation.status,
        InstallationTransition.ENABLE,
        previously_installed=installation.installed_at is not None,
    )
    installation.status = target.value
    installation.enabled = True
    await _commit(session, "failed to enable installation")
    return installation


async def remove(session: AsyncSession, installation: Installation) -> None:
    # Installations, unlike signals and directives, may be removed (package.uninstall).
    await session.delete(installation)
    await _commit(session, "failed to remove installation")
