"""SignalBus: the single entrypoint for recording Signals.

Signals are immutable, tenant-scoped facts. ``emit`` validates the name and
payload, deduplicates on ``dedupe_key``, persists the row, and enqueues a
durable fan-out job for newly created signals. Nothing else in the codebase
inserts ``Signal`` rows.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.core.errors import UnexpectedError, ValidationError
from fleetcore.domain.models import Signal
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import signals as signals_repo
from fleetcore.services.best_effort import best_effort
from fleetcore.services.queue import FANOUT_SIGNAL_JOB, JobQueue, get_job_queue


logger = logging.getLogger(__name__)

# Shared by Signal and Directive names.
NAME_PATTERN = re.compile(r"^[a-z0-9_]+\.[a-z0-9_.]+$")

# Matched against whole key segments, so usage counters like "total_tokens" stay legal.
_SECRET_SEGMENTS = frozenset(
    {
        "apikey",
        "authorization",
        "token",
        "secret",
        "password",
        "passwd",
        "credential",
        "credentials",
    }
)
_SECRET_SEGMENT_PAIRS = frozenset({("api", "key"), ("private", "key"), ("secret", "key")})

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEGMENT_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class EmitResult:
    signal: Signal
    outcome: Literal["created", "existing"]

    @property
    def created(self) -> bool:
        return self.outcome == "created"


def validate_name(name: Any, *, kind: str = "signal") -> str:
    if not isinstance(name, str):
        raise ValidationError(f"{kind} name must be a string")
    cleaned = name.strip()
    if len(cleaned) > 255 or not NAME_PATTERN.match(cleaned):
        raise ValidationError(f"invalid {kind} name {cleaned!r}: expected dot-delimited namespace")
    return cleaned


def _key_segments(key: str) -> list[str]:
    # "apiKey", "api-key" and "API_KEY" all split into ["api", "key"].
    snake = _CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()
    return [segment for segment in _SEGMENT_SPLIT.split(snake) if segment]


def _is_secret_key(key: str) -> bool:
    segments = _key_segments(key)
    if any(segment in _SECRET_SEGMENTS for segment in segments):
        return True
    return any(pair in _SECRET_SEGMENT_PAIRS for pair in zip(segments, segments[1:]))


def ensure_json_safe(value: Any, *, field: str, path: str = "", reject_secrets: bool = True) -> None:
    """Reject anything that would not round-trip through JSON unchanged.

    Secret-shaped keys are rejected at any depth when ``reject_secrets`` is set:
    signals are permanent audit records and credentials must never land in them.
    """
    location = path or field
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"{location} contains a non-finite number")
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"{location} has a non-string key {key!r}")
            if reject_secrets and _is_secret_key(key):
                raise ValidationError(f"{location} contains secret-shaped key {key!r}")
            ensure_json_safe(item, field=field, path=f"{location}.{key}", reject_secrets=reject_secrets)
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            ensure_json_safe(item, field=field, path=f"{location}[{index}]", reject_secrets=reject_secrets)
        return
    raise ValidationError(f"{location} is not JSON-safe ({type(value).__name__})")


def normalize_optional_string(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _ref_part(ref: Mapping[str, Any] | None, part: str) -> str | None:
    if not isinstance(ref, Mapping):
        return None
    return normalize_optional_string(ref.get(part))


async def emit(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    payload: Mapping[str, Any] | None = None,
    *,
    metadata: Mapping[str, Any] | None = None,
    dedupe_key: str | None = None,
    occurred_at: datetime | None = None,
    correlation_id: str | None = None,
    causation_id: str | None = None,
    actor: Mapping[str, Any] | None = None,
    subject: Mapping[str, Any] | None = None,
    source: str | None = None,
    enqueue_fanout: bool = True,
    fanout_args: Mapping[str, Any] | None = None,
    queue: JobQueue | None = None,
) -> EmitResult:
    """Record a Signal for ``tenant_id`` and return it tagged created/existing.

    A ``dedupe_key`` makes the call idempotent: a second emit with the same key
    returns the stored row and enqueues nothing. Without a key every call
    appends a new row. The session is committed on success and rolled back on
    failure, so no partial insert survives.
    """
    tenant_id = require_tenant_id(tenant_id)
    cleaned_name = validate_name(name)
    payload_map = dict(payload or {})
    metadata_map = dict(metadata or {})
    ensure_json_safe(payload_map, field="payload")
    ensure_json_safe(metadata_map, field="metadata")
    if fanout_args:
        ensure_json_safe(dict(fanout_args), field="fanout_args")
    normalized_key = normalize_optional_string(dedupe_key)

    if normalized_key is not None:
        existing = await _load_by_dedupe_key(session, tenant_id, normalized_key)
        if existing is not None:
            return EmitResult(signal=existing, outcome="existing")

    signal = Signal(
        tenant_id=tenant_id,
        name=cleaned_name,
        dedupe_key=normalized_key,
        payload=payload_map,
        metadata_json=metadata_map,
        correlation_id=normalize_optional_string(correlation_id),
        causation_id=normalize_optional_string(causation_id),
        actor_type=_ref_part(actor, "type"),
        actor_id=_ref_part(actor, "id"),
        subject_type=_ref_part(subject, "type"),
        subject_id=_ref_part(subject, "id"),
        source=normalize_optional_string(source),
    )
    if occurred_at is not None:
        signal.occurred_at = occurred_at
    session.add(signal)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if normalized_key is None:
            raise UnexpectedError("signal insert violated a constraint") from exc
        # Lost a race on the dedupe key: the winner's row is the answer.
        winner = await _load_by_dedupe_key(session, tenant_id, normalized_key)
        if winner is None:
            raise UnexpectedError("signal insert violated a constraint") from exc
        return EmitResult(signal=winner, outcome="existing")
    except SQLAlchemyError as exc:
        await session.rollback()
        raise UnexpectedError("failed to persist signal") from exc

    if enqueue_fanout:
        await best_effort(
            "signal.fanout.enqueue",
            (queue or get_job_queue()).enqueue(
                FANOUT_SIGNAL_JOB,
                **{**dict(fanout_args or {}), "tenant": tenant_id, "signal_id": signal.id},
            ),
            tenant=tenant_id,
            signal_id=signal.id,
            signal_name=signal.name,
        )
    logger.debug("signal_emitted tenant=%s signal_id=%s name=%s", tenant_id, signal.id, signal.name)
    return EmitResult(signal=signal, outcome="created")


async def _load_by_dedupe_key(session: AsyncSession, tenant_id: str, dedupe_key: str) -> Signal | None:
    try:
        return await signals_repo.get_by_dedupe_key(session, tenant_id, dedupe_key)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to read signal by dedupe key") from exc
