"""Operator replay: re-enqueue fan-out for Signals that are already persisted.

Replay never inserts or mutates Signals; it only publishes new fan-out jobs,
so handlers observe the same Signal again and must stay idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.core.config import get_settings
from fleetcore.core.errors import UnexpectedError, ValidationError
from fleetcore.domain.models import Signal
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import signals as signals_repo
from fleetcore.services.best_effort import best_effort
from fleetcore.services.queue import FANOUT_SIGNAL_JOB, JobQueue, get_job_queue


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    enqueued: int
    skipped: int

    def as_dict(self) -> dict[str, int]:
        return {"enqueued": self.enqueued, "skipped": self.skipped}


def _as_utc(value: datetime) -> datetime:
    # Naive bounds are read as UTC so mixed inputs still compare.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clamp(limit: int | None, *, default: int, maximum: int) -> int:
    if limit is None:
        return max(1, min(default, maximum))
    return max(1, min(int(limit), maximum))


def _clean_names(names: list[str] | None) -> list[str] | None:
    if not names:
        return None
    cleaned = [name.strip() for name in names if isinstance(name, str) and name.strip()]
    return cleaned or None


async def _list(session: AsyncSession, tenant_id: str, **filters) -> list[Signal]:
    try:
        return await signals_repo.list_signals(session, tenant_id, **filters)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to list signals for replay") from exc


async def _enqueue_all(tenant_id: str, signals: list[Signal], queue: JobQueue | None) -> ReplayResult:
    # Replay oldest first so handlers see signals in their original order.
    job_queue = queue or get_job_queue()
    enqueued = 0
    skipped = 0
    for signal in reversed(signals):
        job_id = await best_effort(
            "signal.replay.enqueue",
            job_queue.enqueue(FANOUT_SIGNAL_JOB, tenant=tenant_id, signal_id=signal.id, replay=True),
            tenant=tenant_id,
            signal_id=signal.id,
        )
        if job_id is None:
            skipped += 1
        else:
            enqueued += 1
    logger.info("signal_replay tenant=%s enqueued=%s skipped=%s", tenant_id, enqueued, skipped)
    return ReplayResult(enqueued=enqueued, skipped=skipped)


async def replay_recent(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int | None = None,
    only_names: list[str] | None = None,
    exclude_names: list[str] | None = None,
    queue: JobQueue | None = None,
) -> ReplayResult:
    settings = get_settings()
    tenant_id = require_tenant_id(tenant_id)
    signals = await _list(
        session,
        tenant_id,
        names=_clean_names(only_names),
        exclude_names=_clean_names(exclude_names),
        limit=_clamp(limit, default=settings.signal_replay_default_limit, maximum=settings.signal_replay_max_limit),
    )
    return await _enqueue_all(tenant_id, signals, queue)


async def replay_by_name(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    *,
    limit: int | None = None,
    queue: JobQueue | None = None,
) -> ReplayResult:
    settings = get_settings()
    tenant_id = require_tenant_id(tenant_id)
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("signal name is required")
    signals = await _list(
        session,
        tenant_id,
        names=[name.strip()],
        limit=_clamp(
            limit,
            default=settings.signal_replay_by_name_default_limit,
            maximum=settings.signal_replay_by_name_max_limit,
        ),
    )
    return await _enqueue_all(tenant_id, signals, queue)


async def replay_by_ids(
    session: AsyncSession,
    tenant_id: str,
    signal_ids: list[str],
    *,
    queue: JobQueue | None = None,
) -> ReplayResult:
    # Ids that do not resolve inside the tenant count as skipped.
    tenant_id = require_tenant_id(tenant_id)
    wanted = list(dict.fromkeys(str(item).strip() for item in signal_ids if str(item).strip()))
    if not wanted:
        return ReplayResult(enqueued=0, skipped=0)
    signals = await _list(session, tenant_id, signal_ids=wanted, limit=len(wanted))
    result = await _enqueue_all(tenant_id, signals, queue)
    return ReplayResult(enqueued=result.enqueued, skipped=result.skipped + len(wanted) - len(signals))


async def replay_by_time_range(
    session: AsyncSession,
    tenant_id: str,
    *,
    inserted_from: datetime,
    inserted_to: datetime,
    limit: int | None = None,
    only_names: list[str] | None = None,
    exclude_names: list[str] | None = None,
    queue: JobQueue | None = None,
) -> ReplayResult:
    settings = get_settings()
    tenant_id = require_tenant_id(tenant_id)
    inserted_from = _as_utc(inserted_from)
    inserted_to = _as_utc(inserted_to)
    if inserted_from > inserted_to:
        raise ValidationError("inserted_from must not be after inserted_to")
    signals = await _list(
        session,
        tenant_id,
        names=_clean_names(only_names),
        exclude_names=_clean_names(exclude_names),
        inserted_from=inserted_from,
        inserted_to=inserted_to,
        limit=_clamp(limit, default=settings.signal_replay_max_limit, maximum=settings.signal_replay_max_limit),
    )
    return await _enqueue_all(tenant_id, signals, queue)
