from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.apps.api.deps import get_db, get_queue, get_tenant_id
from fleetcore.apps.api.response import SuccessEnvelope, success_response
from fleetcore.domain.models import Directive
from fleetcore.services.best_effort import best_effort
from fleetcore.services.directives import lifecycle
from fleetcore.services.queue import JobQueue


router = APIRouter(prefix="/directives", tags=["directives"])


class DirectiveResponse(BaseModel):
    id: str
    name: str
    status: str
    idempotency_key: str | None
    payload: dict[str, Any]
    metadata: dict[str, Any]
    result: dict[str, Any]
    last_error: str | None
    last_error_at: str | None
    requested_by_user_id: str | None
    attempt: int
    max_attempts: int
    scheduled_at: str | None
    started_at: str | None
    completed_at: str | None
    inserted_at: str | None
    updated_at: str | None


class DirectiveCreateRequest(BaseModel):
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    scheduled_at: datetime | None = None
    requested_by_user_id: str | None = None
    max_attempts: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}


class DirectiveCreateResponse(BaseModel):
    directive: DirectiveResponse
    outcome: Literal["created", "existing"]
    enqueued: bool


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(directive: Directive) -> DirectiveResponse:
    return DirectiveResponse(
        id=directive.id,
        name=directive.name,
        status=directive.status,
        idempotency_key=directive.idempotency_key,
        payload=directive.payload or {},
        metadata=directive.metadata_json or {},
        result=directive.result or {},
        last_error=directive.last_error,
        last_error_at=_iso(directive.last_error_at),
        requested_by_user_id=directive.requested_by_user_id,
        attempt=directive.attempt,
        max_attempts=directive.max_attempts,
        scheduled_at=_iso(directive.scheduled_at),
        started_at=_iso(directive.started_at),
        completed_at=_iso(directive.completed_at),
        inserted_at=_iso(directive.inserted_at),
        updated_at=_iso(directive.updated_at),
    )


@router.get("", response_model=SuccessEnvelope[list[DirectiveResponse]])
async def list_directives(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    status_filter: str | None = Query(default=None, alias="status"),
    name: str | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    directives = await lifecycle.list_recent(db, tenant_id, limit=limit, status=status_filter, name=name)
    return success_response(request=request, data=[_to_response(d).model_dump() for d in directives])


@router.get("/{directive_id}", response_model=SuccessEnvelope[DirectiveResponse])
async def get_directive(
    directive_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    directive = await lifecycle.get_directive(db, tenant_id, directive_id)
    return success_response(request=request, data=_to_response(directive).model_dump())


@router.post("", response_model=SuccessEnvelope[DirectiveCreateResponse], status_code=status.HTTP_201_CREATED)
async def create_directive(
    payload: DirectiveCreateRequest,
    request: Request,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
) -> dict:
    requested = await lifecycle.request(
        db,
        tenant_id,
        payload.name,
        payload.payload,
        metadata=payload.metadata,
        idempotency_key=payload.idempotency_key,
        scheduled_at=payload.scheduled_at,
        requested_by_user_id=payload.requested_by_user_id,
        max_attempts=payload.max_attempts,
    )
    enqueued = False
    if requested.created:
        # The directive is durable already; a failed enqueue is recoverable through rerun.
        job_id = await best_effort(
            "directive.enqueue",
            lifecycle.enqueue_run(requested.directive, queue=queue),
            tenant=tenant_id,
            directive_id=requested.directive.id,
        )
        enqueued = job_id is not None
    else:
        response.status_code = status.HTTP_200_OK
    data = DirectiveCreateResponse(
        directive=_to_response(requested.directive),
        outcome=requested.outcome,
        enqueued=enqueued,
    )
    return success_response(request=request, data=data.model_dump())


@router.post("/{directive_id}/cancel", response_model=SuccessEnvelope[DirectiveResponse])
async def cancel_directive(
    directive_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    directive = await lifecycle.get_directive(db, tenant_id, directive_id)
    directive = await lifecycle.cancel(db, directive)
    return success_response(request=request, data=_to_response(directive).model_dump())


@router.post("/{directive_id}/rerun", response_model=SuccessEnvelope[DirectiveResponse], status_code=202)
async def rerun_directive(
    directive_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
) -> dict:
    directive = await lifecycle.rerun(db, tenant_id, directive_id, queue=queue)
    return success_response(request=request, data=_to_response(directive).model_dump())
