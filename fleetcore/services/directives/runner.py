"""DirectiveRunner: executes one Directive per job delivery.

The job carries only ``(tenant, directive_id)`` plus override flags; the runner
reloads the row, applies the due and runnable guards, dispatches by name, and
finalizes lifecycle state. Lifecycle signals are emitted best-effort and never
change the outcome. The queue adapter decides retries from ``RunResult.retry``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.core.config import get_settings
from fleetcore.core.errors import HandlerError, UnexpectedError, error_message, is_retryable
from fleetcore.domain.models import Directive
from fleetcore.domain.state import DirectiveStatus
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import directives as directives_repo
from fleetcore.services.best_effort import best_effort
from fleetcore.services.directives import lifecycle
from fleetcore.services.directives.handlers import DIRECTIVE_HANDLERS, DirectiveContext, DirectiveHandler
from fleetcore.services.queue import JobQueue
from fleetcore.services.signals.bus import emit, normalize_optional_string


logger = logging.getLogger(__name__)

RunOutcome = Literal["discarded", "snoozed", "succeeded", "failed"]

SIGNAL_SOURCE = "directive_runner"


@dataclass(frozen=True)
class RunResult:
    outcome: RunOutcome
    reason: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # True when the queue should deliver the job again.
    retry: bool = False


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def lifecycle_actor(directive: Directive) -> dict[str, str] | None:
    user_id = normalize_optional_string(directive.requested_by_user_id)
    return {"type": "user", "id": user_id} if user_id else None


def lifecycle_subject(directive: Directive) -> dict[str, str] | None:
    # An explicit payload subject wins; otherwise derive it from well-known payload keys.
    payload = directive.payload or {}
    explicit = payload.get("subject")
    if isinstance(explicit, dict):
        subject_type = normalize_optional_string(explicit.get("type"))
        subject_id = normalize_optional_string(explicit.get("id"))
        if subject_type and subject_id:
            return {"type": subject_type, "id": subject_id}
    installation_id = normalize_optional_string(payload.get("installation_id"))
    if installation_id:
        return {"type": "package.installation", "id": installation_id}
    slug = normalize_optional_string(payload.get("slug"))
    if slug:
        return {"type": "package", "id": slug}
    return None


class DirectiveRunner:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue | None = None,
        handlers: dict[str, DirectiveHandler] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._handlers = dict(DIRECTIVE_HANDLERS if handlers is None else handlers)

    async def run(
        self,
        tenant_id: str,
        directive_id: str,
        *,
        rerun: bool = False,
        force: bool = False,
        job_try: int = 1,
        job_id: str | None = None,
    ) -> RunResult:
        tenant_id = require_tenant_id(tenant_id)
        async with self._session_factory() as session:
            directive = await self._load(session, tenant_id, directive_id)
            if directive is None:
                return self._discard(tenant_id, directive_id, "not_found")

            snooze_s = self._snooze_seconds(directive)
            if snooze_s is not None:
                # Re-enqueue instead of raising so waiting does not burn retry budget.
                await lifecycle.enqueue_run(
                    directive, queue=self._queue, rerun=rerun, force=force, defer_s=snooze_s
                )
                logger.info(
                    "directive_snoozed tenant=%s directive_id=%s defer_s=%s",
                    tenant_id,
                    directive_id,
                    snooze_s,
                )
                return RunResult(outcome="snoozed", reason="not_due")

            reason = self._not_runnable_reason(directive, rerun=rerun, force=force, job_try=job_try)
            if reason is not None:
                return self._discard(tenant_id, directive_id, reason)

            override = directive.status in (DirectiveStatus.SUCCEEDED.value, DirectiveStatus.FAILED.value)
            await lifecycle.bump_attempt(session, directive)
            if directive.status != DirectiveStatus.RUNNING.value:
                await lifecycle.mark_running(session, directive, override=override)
            await self._emit_lifecycle(
                tenant_id,
                "directive.started",
                directive,
                {"job_id": job_id},
            )

            try:
                handler = self._handlers.get(directive.name)
                if handler is None:
                    raise HandlerError(f"unknown directive: {directive.name}")
                result = await handler(
                    DirectiveContext(
                        tenant_id=tenant_id,
                        directive=directive,
                        session=session,
                        session_factory=self._session_factory,
                        queue=self._queue,
                    )
                )
            except Exception as exc:
                return await self._finalize_failure(session, tenant_id, directive, exc, job_id=job_id)
            try:
                return await self._finalize_success(session, tenant_id, directive, result or {}, job_id=job_id)
            except Exception as exc:
                # A result that cannot be stored must not strand the directive in running.
                return await self._finalize_failure(session, tenant_id, directive, exc, job_id=job_id)

    async def _load(self, session: AsyncSession, tenant_id: str, directive_id: str) -> Directive | None:
        try:
            return await directives_repo.get_directive(session, tenant_id, directive_id)
        except SQLAlchemyError as exc:
            raise UnexpectedError("failed to load directive") from exc

    def _discard(self, tenant_id: str, directive_id: str, reason: str) -> RunResult:
        logger.info("directive_discarded tenant=%s directive_id=%s reason=%s", tenant_id, directive_id, reason)
        return RunResult(outcome="discarded", reason=reason)

    def _snooze_seconds(self, directive: Directive) -> float | None:
        if directive.scheduled_at is None:
            return None
        remaining = (_as_utc(directive.scheduled_at) - datetime.now(timezone.utc)).total_seconds()
        if remaining <= 0:
            return None
        return min(remaining, float(get_settings().directive_snooze_max_s))

    def _not_runnable_reason(self, directive: Directive, *, rerun: bool, force: bool, job_try: int) -> str | None:
        status = directive.status
        if status == DirectiveStatus.CANCELED.value:
            return "canceled"
        # Either flag is the explicit override for terminal statuses.
        reopen = rerun or force
        if status == DirectiveStatus.SUCCEEDED.value and not reopen:
            return "succeeded"
        if status == DirectiveStatus.FAILED.value and not reopen:
            # A queue redelivery of our own retryable failure resumes while attempts remain.
            resumable = job_try > 1 and int(directive.attempt or 0) < int(directive.max_attempts or 0)
            if not resumable:
                return "failed"
        if status == DirectiveStatus.RUNNING.value and not force:
            # Advisory single-flight guard, not a lock.
            return "running"
        return None

    async def _finalize_success(
        self,
        session: AsyncSession,
        tenant_id: str,
        directive: Directive,
        result: dict[str, Any],
        *,
        job_id: str | None,
    ) -> RunResult:
        await self._refresh(session, directive)
        if directive.status == DirectiveStatus.RUNNING.value:
            await lifecycle.mark_succeeded(session, directive, result=result)
        else:
            # Another writer (the installer cross-link, a cancel) finalized it first.
            logger.info(
                "directive_already_finalized tenant=%s directive_id=%s status=%s",
                tenant_id,
                directive.id,
                directive.status,
            )
        await self._emit_lifecycle(tenant_id, "directive.succeeded", directive, {"job_id": job_id})
        logger.info(
            "directive_succeeded tenant=%s directive_id=%s name=%s attempt=%s",
            tenant_id,
            directive.id,
            directive.name,
            directive.attempt,
        )
        return RunResult(outcome="succeeded", result=result)

    async def _finalize_failure(
        self,
        session: AsyncSession,
        tenant_id: str,
        directive: Directive,
        exc: Exception,
        *,
        job_id: str | None,
    ) -> RunResult:
        message = error_message(exc)
        await session.rollback()
        await self._refresh(session, directive)
        if directive.status == DirectiveStatus.RUNNING.value:
            await lifecycle.mark_failed(session, directive, error=message)
        await self._emit_lifecycle(
            tenant_id,
            "directive.failed",
            directive,
            {"job_id": job_id, "error": message},
        )
        retry = is_retryable(exc) and int(directive.attempt or 0) < int(directive.max_attempts or 0)
        logger.warning(
            "directive_failed tenant=%s directive_id=%s name=%s attempt=%s retry=%s error=%s",
            tenant_id,
            directive.id,
            directive.name,
            directive.attempt,
            retry,
            message,
        )
        return RunResult(outcome="failed", error=message, retry=retry)

    async def _refresh(self, session: AsyncSession, directive: Directive) -> None:
        try:
            await session.refresh(directive)
        except SQLAlchemyError as exc:
            raise UnexpectedError("failed to reload directive") from exc

    async def _emit_lifecycle(
        self,
        tenant_id: str,
        name: str,
        directive: Directive,
        extra: dict[str, Any],
    ) -> None:
        payload = {
            "directive_id": directive.id,
            "directive_name": directive.name,
            "attempt": directive.attempt,
            **{key: value for key, value in extra.items() if value is not None},
        }
        dedupe_key = f"directive_runner:{tenant_id}:{name}:{directive.id}:{directive.attempt or 0}"
        actor = lifecycle_actor(directive)
        subject = lifecycle_subject(directive)

        async def _do_emit() -> None:
            async with self._session_factory() as session:
                await emit(
                    session,
                    tenant_id,
                    name,
                    payload,
                    dedupe_key=dedupe_key,
                    actor=actor,
                    subject=subject,
                    source=SIGNAL_SOURCE,
                    queue=self._queue,
                )

        await best_effort(name, _do_emit(), tenant=tenant_id, directive_id=directive.id)
