"""Directive lifecycle operations.

Every status change goes through ``directive_transition`` so the state machine
is enforced in one place; these functions only stamp timestamps and error
fields around it and commit. Directives are never deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.core.config import get_settings
from fleetcore.core.errors import NotFoundError, UnexpectedError, ValidationError
from fleetcore.domain.models import Directive
from fleetcore.domain.state import DirectiveStatus, DirectiveTransition, directive_transition
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import directives as directives_repo
from fleetcore.services.queue import RUN_DIRECTIVE_JOB, JobQueue, get_job_queue
from fleetcore.services.signals.bus import ensure_json_safe, normalize_optional_string, validate_name


logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Directive failed"
MAX_LIST_LIMIT = 500


@dataclass(frozen=True)
class RequestResult:
    directive: Directive
    outcome: Literal["created", "existing"]

    @property
    def created(self) -> bool:
        return self.outcome == "created"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _commit(session: AsyncSession, message: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise UnexpectedError(message) from exc


async def get_directive(session: AsyncSession, tenant_id: str, directive_id: str) -> Directive:
    tenant_id = require_tenant_id(tenant_id)
    try:
        directive = await directives_repo.get_directive(session, tenant_id, directive_id)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load directive") from exc
    if directive is None:
        raise NotFoundError("directive not found")
    return directive


async def get_by_idempotency_key(
    session: AsyncSession, tenant_id: str, idempotency_key: str
) -> Directive | None:
    tenant_id = require_tenant_id(tenant_id)
    try:
        return await directives_repo.get_by_idempotency_key(session, tenant_id, idempotency_key)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to load directive") from exc


async def list_recent(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 50,
    status: str | None = None,
    name: str | None = None,
) -> list[Directive]:
    tenant_id = require_tenant_id(tenant_id)
    if status is not None:
        try:
            status = DirectiveStatus(status).value
        except ValueError as exc:
            raise ValidationError(f"unknown directive status {status!r}") from exc
    bounded = max(1, min(int(limit), MAX_LIST_LIMIT))
    try:
        return await directives_repo.list_directives(session, tenant_id, status=status, name=name, limit=bounded)
    except SQLAlchemyError as exc:
        raise UnexpectedError("failed to list directives") from exc


async def request(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    payload: Mapping[str, Any] | None = None,
    *,
    metadata: Mapping[str, Any] | None = None,
    idempotency_key: str | None = None,
    scheduled_at: datetime | None = None,
    requested_by_user_id: str | None = None,
    max_attempts: int | None = None,
) -> RequestResult:
    """Create a Directive in ``requested``; idempotent on ``idempotency_key``."""
    tenant_id = require_tenant_id(tenant_id)
    cleaned_name = validate_name(name, kind="directive")
    payload_map = dict(payload or {})
    metadata_map = dict(metadata or {})
    ensure_json_safe(payload_map, field="payload", reject_secrets=False)
    ensure_json_safe(metadata_map, field="metadata", reject_secrets=False)
    if max_attempts is not None and int(max_attempts) < 1:
        raise ValidationError("max_attempts must be at least 1")
    key = normalize_optional_string(idempotency_key)

    if key is not None:
        existing = await get_by_idempotency_key(session, tenant_id, key)
        if existing is not None:
            return RequestResult(directive=existing, outcome="existing")

    directive = Directive(
        tenant_id=tenant_id,
        name=cleaned_name,
        idempotency_key=key,
        status=DirectiveStatus.REQUESTED.value,
        payload=payload_map,
        metadata_json=metadata_map,
        result={},
        requested_by_user_id=normalize_optional_string(requested_by_user_id),
        attempt=0,
        max_attempts=int(max_attempts or get_settings().directive_default_max_attempts),
    )
    if scheduled_at is not None:
        directive.scheduled_at = scheduled_at
    session.add(directive)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        winner = await get_by_idempotency_key(session, tenant_id, key) if key else None
        if winner is None:
            raise UnexpectedError("directive insert violated a constraint") from exc
        return RequestResult(directive=winner, outcome="existing")
    except SQLAlchemyError as exc:
        await session.rollback()
        raise UnexpectedError("failed to persist directive") from exc
    logger.info("directive_requested tenant=%s directive_id=%s name=%s", tenant_id, directive.id, directive.name)
    return RequestResult(directive=directive, outcome="created")


async def bump_attempt(session: AsyncSession, directive: Directive) -> Directive:
    directive.attempt = int(directive.attempt or 0) + 1
    await _commit(session, "failed to bump directive attempt")
    return directive


async def mark_running(session: AsyncSession, directive: Directive, *, override: bool = False) -> Directive:
    target = directive_transition(directive.status, DirectiveTransition.MARK_RUNNING, override=override)
    directive.status = target.value
    directive.started_at = _utc_now()
    directive.completed_at = None
    directive.last_error = None
    directive.last_error_at = None
    await _commit(session, "failed to mark directive running")
    return directive


async def mark_succeeded(
    session: AsyncSession,
    directive: Directive,
    *,
    result: Mapping[str, Any] | None = None,
    override: bool = False,
) -> Directive:
    target = directive_transition(directive.status, DirectiveTransition.MARK_SUCCEEDED, override=override)
    result_map = dict(result or {})
    ensure_json_safe(result_map, field="result", reject_secrets=False)
    directive.status = target.value
    directive.result = result_map
    directive.completed_at = _utc_now()
    directive.last_error = None
    directive.last_error_at = None
    await _commit(session, "failed to mark directive succeeded")
    return directive


async def mark_failed(
    session: AsyncSession,
    directive: Directive,
    *,
    error: str | None = None,
    override: bool = False,
) -> Directive:
    target = directive_transition(directive.status, DirectiveTransition.MARK_FAILED, override=override)
    now = _utc_now()
    directive.status = target.value
    directive.last_error = normalize_optional_string(error) or DEFAULT_FAILURE_MESSAGE
    directive.last_error_at = now
    directive.completed_at = now
    await _commit(session, "failed to mark directive failed")
    return directive


async def cancel(session: AsyncSession, directive: Directive) -> Directive:
    # Cancel stops future attempts; an attempt already in flight runs to completion.
    target = directive_transition(directive.status, DirectiveTransition.CANCEL)
    directive.status = target.value
    directive.completed_at = _utc_now()
    await _commit(session, "failed to cancel directive")
    logger.info("directive_canceled tenant=%s directive_id=%s", directive.tenant_id, directive.id)
    return directive


async def enqueue_run(
    directive: Directive,
    *,
    queue: JobQueue | None = None,
    rerun: bool = False,
    force: bool = False,
    defer_s: float | None = None,
) -> str | None:
    # Job payloads carry references only; the runner reloads fresh state.
    kwargs: dict[str, Any] = {"tenant": directive.tenant_id, "directive_id": directive.id}
    if rerun:
        kwargs["rerun"] = True
    if force:
        kwargs["force"] = True
    return await (queue or get_job_queue()).enqueue(RUN_DIRECTIVE_JOB, defer_s=defer_s, **kwargs)


async def rerun(
    session: AsyncSession,
    tenant_id: str,
    directive_id: str,
    *,
    queue: JobQueue | None = None,
) -> Directive:
    """Re-enqueue a directive with the explicit rerun override.

    Canceled directives stay canceled: the runner never resumes them.
    """
    directive = await get_directive(session, tenant_id, directive_id)
    if directive.status == DirectiveStatus.CANCELED.value:
        raise ValidationError("canceled directives cannot be rerun")
    await enqueue_run(directive, queue=queue, rerun=True)
    logger.info("directive_rerun_enqueued tenant=%s directive_id=%s", directive.tenant_id, directive.id)
    return directive
