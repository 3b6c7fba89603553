from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.apps.api.deps import get_db, get_tenant_id
from fleetcore.apps.api.response import SuccessEnvelope, success_response
from fleetcore.domain.models import Installation
from fleetcore.services.packages import installations


router = APIRouter(prefix="/installations", tags=["installations"])


class InstallationResponse(BaseModel):
    id: str
    package_slug: str
    package_version: str
    package_name: str | None
    status: str
    enabled: bool
    installed_at: str | None
    installed_by_user_id: str | None
    config: dict[str, Any]
    last_error: str | None
    last_error_at: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(installation: Installation) -> InstallationResponse:
    return InstallationResponse(
        id=installation.id,
        package_slug=installation.package_slug,
        package_version=installation.package_version,
        package_name=installation.package_name,
        status=installation.status,
        enabled=installation.enabled,
        installed_at=_iso(installation.installed_at),
        installed_by_user_id=installation.installed_by_user_id,
        config=installation.config or {},
        last_error=installation.last_error,
        last_error_at=_iso(installation.last_error_at),
    )


@router.get("", response_model=SuccessEnvelope[list[InstallationResponse]])
async def list_installations(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await installations.list_installations(db, tenant_id)
    return success_response(request=request, data=[_to_response(row).model_dump() for row in rows])


@router.post("/{installation_id}/disable", response_model=SuccessEnvelope[InstallationResponse])
async def disable_installation(
    installation_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    installation = await installations.get_installation(db, tenant_id, installation_id)
    installation = await installations.disable(db, installation)
    return success_response(request=request, data=_to_response(installation).model_dump())


@router.post("/{installation_id}/enable", response_model=SuccessEnvelope[InstallationResponse])
async def enable_installation(
    installation_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    installation = await installations.get_installation(db, tenant_id, installation_id)
    installation = await installations.enable(db, installation)
    return success_response(request=request, data=_to_response(installation).model_dump())
