from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.apps.api.deps import get_db, get_queue, get_tenant_id
from fleetcore.apps.api.response import SuccessEnvelope, success_response
from fleetcore.core.errors import ValidationError
from fleetcore.domain.models import Signal
from fleetcore.services.queue import JobQueue
from fleetcore.services.signals import bus, queries, replay


router = APIRouter(prefix="/signals", tags=["signals"])


class RefModel(BaseModel):
    type: str
    id: str


class SignalResponse(BaseModel):
    id: str
    name: str
    payload: dict[str, Any]
    metadata: dict[str, Any]
    dedupe_key: str | None
    occurred_at: str | None
    correlation_id: str | None
    causation_id: str | None
    actor: RefModel | None
    subject: RefModel | None
    source: str | None
    inserted_at: str | None


class EmitRequest(BaseModel):
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    occurred_at: datetime | None = None
    correlation_id: str | None = None
    causation_id: str | None = None
    actor: RefModel | None = None
    subject: RefModel | None = None
    source: str | None = None
    enqueue_fanout: bool = True

    # Reject unknown fields so tenant scope cannot be smuggled in the body.
    model_config = {"extra": "forbid"}


class EmitResponse(BaseModel):
    signal: SignalResponse
    outcome: Literal["created", "existing"]


class ReplayRequest(BaseModel):
    mode: Literal["recent", "by_name", "by_ids", "by_time_range"] = "recent"
    limit: int | None = Field(default=None, ge=1)
    name: str | None = None
    names: list[str] | None = None
    exclude_names: list[str] | None = None
    signal_ids: list[str] | None = None
    inserted_from: datetime | None = None
    inserted_to: datetime | None = None

    model_config = {"extra": "forbid"}


class ReplayResponse(BaseModel):
    enqueued: int
    skipped: int


def _ref(ref_type: str | None, ref_id: str | None) -> RefModel | None:
    if ref_type is None or ref_id is None:
        return None
    return RefModel(type=ref_type, id=ref_id)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(signal: Signal) -> SignalResponse:
    return SignalResponse(
        id=signal.id,
        name=signal.name,
        payload=signal.payload or {},
        metadata=signal.metadata_json or {},
        dedupe_key=signal.dedupe_key,
        occurred_at=_iso(signal.occurred_at),
        correlation_id=signal.correlation_id,
        causation_id=signal.causation_id,
        actor=_ref(signal.actor_type, signal.actor_id),
        subject=_ref(signal.subject_type, signal.subject_id),
        source=signal.source,
        inserted_at=_iso(signal.inserted_at),
    )


@router.get("", response_model=SuccessEnvelope[list[SignalResponse]])
async def list_signals(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    name: list[str] | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    signals = await queries.list_recent(db, tenant_id, limit=limit, names=name)
    return success_response(request=request, data=[_to_response(s).model_dump() for s in signals])


@router.get("/{signal_id}", response_model=SuccessEnvelope[SignalResponse])
async def get_signal(
    signal_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    signal = await queries.get_signal(db, tenant_id, signal_id)
    return success_response(request=request, data=_to_response(signal).model_dump())


@router.post("", response_model=SuccessEnvelope[EmitResponse], status_code=status.HTTP_201_CREATED)
async def emit_signal(
    payload: EmitRequest,
    request: Request,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
) -> dict:
    result = await bus.emit(
        db,
        tenant_id,
        payload.name,
        payload.payload,
        metadata=payload.metadata,
        dedupe_key=payload.dedupe_key,
        occurred_at=payload.occurred_at,
        correlation_id=payload.correlation_id,
        causation_id=payload.causation_id,
        actor=payload.actor.model_dump() if payload.actor else None,
        subject=payload.subject.model_dump() if payload.subject else None,
        source=payload.source,
        enqueue_fanout=payload.enqueue_fanout,
        queue=queue,
    )
    if not result.created:
        # Deduplicated emits return the stored fact unchanged.
        response.status_code = status.HTTP_200_OK
    data = EmitResponse(signal=_to_response(result.signal), outcome=result.outcome)
    return success_response(request=request, data=data.model_dump())


@router.post("/replay", response_model=SuccessEnvelope[ReplayResponse])
async def replay_signals(
    payload: ReplayRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
) -> dict:
    if payload.mode == "by_name":
        if not payload.name:
            raise ValidationError("replay by_name requires name")
        result = await replay.replay_by_name(db, tenant_id, payload.name, limit=payload.limit, queue=queue)
    elif payload.mode == "by_ids":
        result = await replay.replay_by_ids(db, tenant_id, payload.signal_ids or [], queue=queue)
    elif payload.mode == "by_time_range":
        if payload.inserted_from is None or payload.inserted_to is None:
            raise ValidationError("replay by_time_range requires inserted_from and inserted_to")
        result = await replay.replay_by_time_range(
            db,
            tenant_id,
            inserted_from=payload.inserted_from,
            inserted_to=payload.inserted_to,
            limit=payload.limit,
            only_names=payload.names,
            exclude_names=payload.exclude_names,
            queue=queue,
        )
    else:
        result = await replay.replay_recent(
            db,
            tenant_id,
            limit=payload.limit,
            only_names=payload.names,
            exclude_names=payload.exclude_names,
            queue=queue,
        )
    return success_response(request=request, data=result.as_dict())
