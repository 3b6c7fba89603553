from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fleetcore.core.errors import IllegalTransitionError, NotFoundError, ValidationError
from fleetcore.domain.models import Directive
from fleetcore.services.directives import lifecycle
from fleetcore.services.queue import RUN_DIRECTIVE_JOB
from fleetcore.tests.utils.factories import count_rows


async def _requested(session, **kwargs) -> Directive:
    result = await lifecycle.request(session, "t1", "test.echo", {"value": 1}, **kwargs)
    return result.directive


async def _failed(session) -> Directive:
    directive = await _requested(session)
    await lifecycle.mark_running(session, directive)
    return await lifecycle.mark_failed(session, directive, error="boom")


async def _reload(session_factory, directive_id: str) -> Directive:
    async with session_factory() as db:
        return await lifecycle.get_directive(db, "t1", directive_id)


@pytest.mark.asyncio
async def test_request_defaults(session, session_factory) -> None:
    result = await lifecycle.request(session, "t1", " test.echo ", requested_by_user_id=" user-1 ")

    assert result.created
    stored = await _reload(session_factory, result.directive.id)
    assert stored.name == "test.echo"
    assert stored.status == "requested"
    assert stored.attempt == 0
    assert stored.max_attempts == 10
    assert stored.payload == {} and stored.result == {}
    assert stored.requested_by_user_id == "user-1"
    assert stored.started_at is None and stored.completed_at is None
    assert stored.last_error is None and stored.last_error_at is None


@pytest.mark.asyncio
async def test_request_is_idempotent_on_key(session, session_factory) -> None:
    first = await lifecycle.request(session, "t1", "test.echo", {"value": 1}, idempotency_key="k-1")
    second = await lifecycle.request(session, "t1", "test.echo", {"value": 2}, idempotency_key="k-1")
    other_tenant = await lifecycle.request(session, "t2", "test.echo", idempotency_key="k-1")

    assert second.outcome == "existing"
    assert second.directive.id == first.directive.id
    assert second.directive.payload == {"value": 1}
    assert other_tenant.created
    assert await count_rows(session_factory, Directive, "t1") == 1


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"max_attempts": -3}])
@pytest.mark.asyncio
async def test_request_rejects_non_positive_max_attempts(session, session_factory, kwargs) -> None:
    with pytest.raises(ValidationError, match="max_attempts"):
        await lifecycle.request(session, "t1", "test.echo", **kwargs)
    assert await count_rows(session_factory, Directive) == 0


@pytest.mark.asyncio
async def test_request_rejects_bad_names_and_payloads(session) -> None:
    with pytest.raises(ValidationError):
        await lifecycle.request(session, "t1", "echo")
    with pytest.raises(ValidationError, match="payload"):
        await lifecycle.request(session, "t1", "test.echo", {"when": datetime.now(timezone.utc)})


@pytest.mark.asyncio
async def test_bump_attempt_increments_and_persists(session, session_factory) -> None:
    directive = await _requested(session)

    await lifecycle.bump_attempt(session, directive)
    await lifecycle.bump_attempt(session, directive)

    stored = await _reload(session_factory, directive.id)
    assert stored.attempt == 2
    # Counting attempts never changes status.
    assert stored.status == "requested"


@pytest.mark.asyncio
async def test_mark_running_stamps_start_and_clears_previous_failure(session, session_factory) -> None:
    directive = await _failed(session)
    assert directive.last_error == "boom"

    await lifecycle.mark_running(session, directive, override=True)

    stored = await _reload(session_factory, directive.id)
    assert stored.status == "running"
    assert stored.started_at is not None
    assert stored.completed_at is None
    assert stored.last_error is None
    assert stored.last_error_at is None


@pytest.mark.asyncio
async def test_mark_running_from_terminal_needs_override(session, session_factory) -> None:
    directive = await _failed(session)

    with pytest.raises(IllegalTransitionError):
        await lifecycle.mark_running(session, directive)
    assert (await _reload(session_factory, directive.id)).status == "failed"


@pytest.mark.asyncio
async def test_mark_succeeded_stores_result(session, session_factory) -> None:
    directive = await _requested(session)
    await lifecycle.mark_running(session, directive)

    await lifecycle.mark_succeeded(session, directive, result={"rows": 3, "api_key_hint": "sk-...1234"})

    stored = await _reload(session_factory, directive.id)
    assert stored.status == "succeeded"
    # Results are not audit facts, so secret-shaped keys are allowed.
    assert stored.result == {"rows": 3, "api_key_hint": "sk-...1234"}
    assert stored.completed_at is not None
    assert stored.last_error is None and stored.last_error_at is None


@pytest.mark.asyncio
async def test_mark_succeeded_rejects_unstorable_result(session, session_factory) -> None:
    directive = await _requested(session)
    await lifecycle.mark_running(session, directive)

    with pytest.raises(ValidationError, match="not JSON-safe"):
        await lifecycle.mark_succeeded(session, directive, result={"at": datetime.now(timezone.utc)})

    assert directive.status == "running"
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "running"
    assert stored.result == {}
    assert stored.completed_at is None


@pytest.mark.parametrize("error", [None, "", "   "])
@pytest.mark.asyncio
async def test_mark_failed_uses_default_message_for_blank_errors(session, session_factory, error) -> None:
    directive = await _requested(session)
    await lifecycle.mark_running(session, directive)

    await lifecycle.mark_failed(session, directive, error=error)

    stored = await _reload(session_factory, directive.id)
    assert stored.status == "failed"
    assert stored.last_error == "Directive failed"
    assert stored.last_error_at is not None
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_mark_failed_strips_error_text(session, session_factory) -> None:
    directive = await _requested(session)
    await lifecycle.mark_running(session, directive)

    await lifecycle.mark_failed(session, directive, error="  upstream timed out \n")

    assert (await _reload(session_factory, directive.id)).last_error == "upstream timed out"


@pytest.mark.asyncio
async def test_cancel_stamps_completion(session, session_factory) -> None:
    requested = await _requested(session)
    running = await _requested(session)
    await lifecycle.mark_running(session, running)

    await lifecycle.cancel(session, requested)
    await lifecycle.cancel(session, running)

    for directive_id in (requested.id, running.id):
        stored = await _reload(session_factory, directive_id)
        assert stored.status == "canceled"
        assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_cancel_is_refused_for_terminal_directives(session, session_factory) -> None:
    directive = await _requested(session)
    await lifecycle.cancel(session, directive)

    with pytest.raises(IllegalTransitionError):
        await lifecycle.cancel(session, directive)

    failed = await _failed(session)
    with pytest.raises(IllegalTransitionError):
        await lifecycle.cancel(session, failed)
    assert (await _reload(session_factory, failed.id)).status == "failed"


@pytest.mark.asyncio
async def test_enqueue_run_carries_only_references_and_flags(session, queue) -> None:
    directive = await _requested(session)

    await lifecycle.enqueue_run(directive, queue=queue)
    await lifecycle.enqueue_run(directive, queue=queue, rerun=True, defer_s=5)
    await lifecycle.enqueue_run(directive, queue=queue, force=True)

    jobs = queue.of(RUN_DIRECTIVE_JOB)
    assert [job.kwargs for job in jobs] == [
        {"tenant": "t1", "directive_id": directive.id},
        {"tenant": "t1", "directive_id": directive.id, "rerun": True},
        {"tenant": "t1", "directive_id": directive.id, "force": True},
    ]
    assert [job.defer_s for job in jobs] == [None, 5, None]


@pytest.mark.asyncio
async def test_rerun_enqueues_with_override(session, queue) -> None:
    directive = await _failed(session)

    await lifecycle.rerun(session, "t1", directive.id, queue=queue)

    assert queue.jobs[0].kwargs == {"tenant": "t1", "directive_id": directive.id, "rerun": True}


@pytest.mark.asyncio
async def test_rerun_refuses_canceled_and_unknown_directives(session, queue) -> None:
    directive = await _requested(session)
    await lifecycle.cancel(session, directive)

    with pytest.raises(ValidationError, match="canceled"):
        await lifecycle.rerun(session, "t1", directive.id, queue=queue)
    with pytest.raises(NotFoundError):
        await lifecycle.rerun(session, "t1", "missing", queue=queue)
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_list_recent_filters_and_validates_status(session) -> None:
    first = await _requested(session)
    await _failed(session)

    requested = await lifecycle.list_recent(session, "t1", status="requested")
    assert [directive.id for directive in requested] == [first.id]
    assert len(await lifecycle.list_recent(session, "t1", name="test.echo")) == 2
    assert await lifecycle.list_recent(session, "t2") == []
    with pytest.raises(ValidationError, match="status"):
        await lifecycle.list_recent(session, "t1", status="paused")
