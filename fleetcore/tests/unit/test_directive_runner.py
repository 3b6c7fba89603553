from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleetcore.core.errors import HandlerError, ValidationError
from fleetcore.domain.models import Agent, Installation
from fleetcore.services.directives import lifecycle
from fleetcore.services.directives.handlers import DIRECTIVE_HANDLERS
from fleetcore.services.directives.runner import DirectiveRunner, lifecycle_subject
from fleetcore.services.packages import installations
from fleetcore.services.packages.installer import PackageInstaller
from fleetcore.services.queue import FANOUT_SIGNAL_JOB, INSTALL_PACKAGE_JOB, RUN_DIRECTIVE_JOB
from fleetcore.tests.utils.factories import (
    agents_for,
    count_rows,
    create_installation,
    create_package,
    signals_named,
)


async def _ok(context) -> dict:
    return {"echo": context.directive.payload.get("value")}


async def _permanent(context) -> dict:
    raise ValidationError("payload.value is required")


async def _transient(context) -> dict:
    raise HandlerError("upstream timed out")


class _FlakyHandler:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self, context) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise HandlerError("not yet")
        return {"calls": self.calls}


def _runner(session_factory, queue, **handlers) -> DirectiveRunner:
    table = {name.replace("_", "."): handler for name, handler in handlers.items()}
    return DirectiveRunner(session_factory=session_factory, queue=queue, handlers=table)


async def _request(session, name: str = "test.echo", payload=None, **kwargs):
    result = await lifecycle.request(session, "t1", name, payload or {"value": 1}, **kwargs)
    return result.directive


async def _reload(session_factory, directive_id: str):
    async with session_factory() as db:
        return await lifecycle.get_directive(db, "t1", directive_id)


@pytest.mark.asyncio
async def test_missing_directive_is_discarded(session_factory, queue) -> None:
    result = await _runner(session_factory, queue).run("t1", "missing")

    assert result.outcome == "discarded"
    assert result.reason == "not_found"


@pytest.mark.asyncio
async def test_successful_run_records_result_and_lifecycle_signals(session, session_factory, queue) -> None:
    directive = await _request(session, requested_by_user_id="user-1")

    result = await _runner(session_factory, queue, test_echo=_ok).run("t1", directive.id, job_id="job-9")

    assert result.outcome == "succeeded"
    assert result.result == {"echo": 1}
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "succeeded"
    assert stored.attempt == 1
    assert stored.result == {"echo": 1}
    assert stored.started_at is not None and stored.completed_at is not None
    assert stored.last_error is None

    started = await signals_named(session_factory, "t1", "directive.started")
    succeeded = await signals_named(session_factory, "t1", "directive.succeeded")
    assert len(started) == 1 and len(succeeded) == 1
    assert started[0].source == "directive_runner"
    assert (started[0].actor_type, started[0].actor_id) == ("user", "user-1")
    assert started[0].payload["job_id"] == "job-9"
    assert started[0].dedupe_key == f"directive_runner:t1:directive.started:{directive.id}:1"
    assert len(queue.of(FANOUT_SIGNAL_JOB)) == 2


@pytest.mark.asyncio
async def test_unknown_directive_name_fails_and_retries(session, session_factory, queue) -> None:
    directive = await _request(session, name="test.unknown")

    result = await _runner(session_factory, queue).run("t1", directive.id)

    assert result.outcome == "failed"
    assert result.retry is True
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "failed"
    assert "unknown directive" in stored.last_error
    assert stored.last_error_at is not None
    assert len(await signals_named(session_factory, "t1", "directive.failed")) == 1


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(session, session_factory, queue) -> None:
    directive = await _request(session)

    result = await _runner(session_factory, queue, test_echo=_permanent).run("t1", directive.id)

    assert result.outcome == "failed"
    assert result.retry is False
    assert result.error == "payload.value is required"


@pytest.mark.asyncio
async def test_exhausted_attempts_stop_retries(session, session_factory, queue) -> None:
    directive = await _request(session, max_attempts=1)

    result = await _runner(session_factory, queue, test_echo=_transient).run("t1", directive.id)

    assert result.outcome == "failed"
    assert result.retry is False
    assert (await _reload(session_factory, directive.id)).attempt == 1


@pytest.mark.asyncio
async def test_future_directive_snoozes_without_spending_an_attempt(session, session_factory, queue) -> None:
    directive = await _request(session, scheduled_at=datetime.now(timezone.utc) + timedelta(hours=1))

    result = await _runner(session_factory, queue, test_echo=_ok).run("t1", directive.id)

    assert result.outcome == "snoozed"
    job = queue.of(RUN_DIRECTIVE_JOB)[0]
    assert job.kwargs == {"tenant": "t1", "directive_id": directive.id}
    assert 0 < job.defer_s <= 60
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "requested"
    assert stored.attempt == 0


@pytest.mark.asyncio
async def test_past_due_directive_runs_immediately(session, session_factory, queue) -> None:
    directive = await _request(session, scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=5))

    result = await _runner(session_factory, queue, test_echo=_ok).run("t1", directive.id)

    assert result.outcome == "succeeded"
    assert queue.of(RUN_DIRECTIVE_JOB) == []


@pytest.mark.asyncio
async def test_terminal_directives_are_discarded(session, session_factory, queue) -> None:
    runner = _runner(session_factory, queue, test_echo=_ok, test_fail=_permanent)
    succeeded = await _request(session)
    await runner.run("t1", succeeded.id)
    failed = await _request(session, name="test.fail")
    await runner.run("t1", failed.id)
    canceled = await _request(session)
    await lifecycle.cancel(session, canceled)

    assert (await runner.run("t1", succeeded.id)).reason == "succeeded"
    assert (await runner.run("t1", failed.id)).reason == "failed"
    assert (await runner.run("t1", canceled.id)).reason == "canceled"
    # Rerun never resurrects a canceled directive.
    assert (await runner.run("t1", canceled.id, rerun=True)).reason == "canceled"


@pytest.mark.asyncio
async def test_running_directive_needs_force(session, session_factory, queue) -> None:
    directive = await _request(session)
    await lifecycle.mark_running(session, directive)
    runner = _runner(session_factory, queue, test_echo=_ok)

    assert (await runner.run("t1", directive.id)).reason == "running"

    result = await runner.run("t1", directive.id, force=True)
    assert result.outcome == "succeeded"


@pytest.mark.asyncio
async def test_rerun_executes_succeeded_directive_again(session, session_factory, queue) -> None:
    directive = await _request(session)
    runner = _runner(session_factory, queue, test_echo=_ok)
    await runner.run("t1", directive.id)

    result = await runner.run("t1", directive.id, rerun=True)

    assert result.outcome == "succeeded"
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "succeeded"
    assert stored.attempt == 2
    # Each attempt gets its own lifecycle signals.
    assert len(await signals_named(session_factory, "t1", "directive.started")) == 2


@pytest.mark.asyncio
async def test_queue_redelivery_resumes_failed_directive(session, session_factory, queue) -> None:
    flaky = _FlakyHandler(failures=1)
    directive = await _request(session, max_attempts=3)
    runner = _runner(session_factory, queue, test_echo=flaky)

    first = await runner.run("t1", directive.id, job_try=1)
    second = await runner.run("t1", directive.id, job_try=2)

    assert first.outcome == "failed" and first.retry is True
    assert second.outcome == "succeeded"
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "succeeded"
    assert stored.attempt == 2
    assert stored.last_error is None


@pytest.mark.asyncio
async def test_unstorable_result_fails_instead_of_staying_running(session, session_factory, queue) -> None:
    async def _returns_datetime(context) -> dict:
        return {"at": datetime(2026, 1, 1, tzinfo=timezone.utc)}

    directive = await _request(session)
    runner = _runner(session_factory, queue, test_echo=_returns_datetime)

    result = await runner.run("t1", directive.id, job_try=1)

    assert result.outcome == "failed"
    assert result.retry is False
    assert "not JSON-safe" in result.error
    stored = await _reload(session_factory, directive.id)
    assert stored.status == "failed"
    assert stored.result == {}
    assert "not JSON-safe" in stored.last_error
    assert stored.completed_at is not None
    assert len(await signals_named(session_factory, "t1", "directive.failed")) == 1
    assert await signals_named(session_factory, "t1", "directive.succeeded") == []

    # A redelivery is handled as a failed directive, never as a stuck running one.
    redelivered = await runner.run("t1", directive.id, job_try=2)
    assert redelivered.reason != "running"
    assert redelivered.outcome == "failed"
    assert (await _reload(session_factory, directive.id)).status == "failed"


@pytest.mark.asyncio
async def test_force_reopens_succeeded_and_failed_directives(session, session_factory, queue) -> None:
    runner = _runner(session_factory, queue, test_echo=_ok, test_fail=_permanent)
    succeeded = await _request(session)
    await runner.run("t1", succeeded.id)
    failed = await _request(session, name="test.fail")
    await runner.run("t1", failed.id)

    again = await runner.run("t1", succeeded.id, force=True)
    assert again.outcome == "succeeded"
    assert (await _reload(session_factory, succeeded.id)).attempt == 2

    # The failed directive runs again on a first delivery; its handler fails permanently once more.
    retried = await runner.run("t1", failed.id, force=True, job_try=1)
    assert retried.outcome == "failed"
    stored = await _reload(session_factory, failed.id)
    assert stored.status == "failed"
    assert stored.attempt == 2


@pytest.mark.asyncio
async def test_force_never_reopens_canceled_directive(session, session_factory, queue) -> None:
    directive = await _request(session)
    await lifecycle.cancel(session, directive)

    result = await _runner(session_factory, queue, test_echo=_ok).run("t1", directive.id, force=True, rerun=True)

    assert result.outcome == "discarded"
    assert result.reason == "canceled"


@pytest.mark.asyncio
async def test_snooze_keeps_force_and_rerun_flags(session, session_factory, queue) -> None:
    directive = await _request(session, scheduled_at=datetime.now(timezone.utc) + timedelta(minutes=10))

    result = await _runner(session_factory, queue, test_echo=_ok).run("t1", directive.id, force=True, rerun=True)

    assert result.outcome == "snoozed"
    job = queue.of(RUN_DIRECTIVE_JOB)[0]
    assert job.kwargs == {"tenant": "t1", "directive_id": directive.id, "rerun": True, "force": True}


@pytest.mark.asyncio
async def test_package_install_creates_installation_and_enqueues_installer(session, session_factory, queue) -> None:
    await create_package(session_factory)
    directive = await _request(
        session,
        name="package.install",
        payload={"slug": "support-kit", "config": {"region": "eu"}},
        idempotency_key="install-support-kit",
        requested_by_user_id="user-1",
    )
    runner = DirectiveRunner(session_factory=session_factory, queue=queue, handlers=DIRECTIVE_HANDLERS)

    result = await runner.run("t1", directive.id)

    assert result.outcome == "succeeded"
    assert result.result["installation_created"] is True
    assert result.result["enqueued"] is True
    assert result.result["package"] == {"slug": "support-kit", "version": "1.0.0"}
    installer_jobs = queue.of(INSTALL_PACKAGE_JOB)
    assert installer_jobs[0].kwargs == {"tenant": "t1", "installation_id": result.result["installation_id"]}
    async with session_factory() as db:
        installation = await installations.get_installation(db, "t1", result.result["installation_id"])
    assert installation.config == {"region": "eu"}
    assert installation.installed_by_user_id == "user-1"
    assert installation.idempotency_key == "install-support-kit"
    assert len(await signals_named(session_factory, "t1", "package.install.processed")) == 1

    again = await runner.run("t1", directive.id, rerun=True)

    assert again.result["installation_created"] is False
    assert again.result["installation_id"] == result.result["installation_id"]
    assert await count_rows(session_factory, Installation, "t1") == 1


@pytest.mark.asyncio
async def test_package_install_skips_installer_when_already_installed(session, session_factory, queue) -> None:
    await create_package(session_factory)
    await create_installation(session_factory, tenant_id="t1", status="installed")
    directive = await _request(session, name="package.install", payload={"slug": "support-kit"})

    result = await DirectiveRunner(session_factory=session_factory, queue=queue).run("t1", directive.id)

    assert result.outcome == "succeeded"
    assert result.result["enqueued"] is False
    assert queue.of(INSTALL_PACKAGE_JOB) == []


@pytest.mark.asyncio
async def test_package_install_missing_package_fails_permanently(session, session_factory, queue) -> None:
    directive = await _request(session, name="package.install", payload={"slug": "ghost"})

    result = await DirectiveRunner(session_factory=session_factory, queue=queue).run("t1", directive.id)

    assert result.outcome == "failed"
    assert result.retry is False
    assert (await _reload(session_factory, directive.id)).last_error == "package not found (slug=ghost)"


@pytest.mark.asyncio
async def test_package_install_rejects_unpublished_and_mismatched_versions(session, session_factory, queue) -> None:
    await create_package(session_factory, slug="draft-kit", published=False)
    await create_package(session_factory, slug="support-kit", version="1.0.0")
    runner = DirectiveRunner(session_factory=session_factory, queue=queue)
    draft = await _request(session, name="package.install", payload={"slug": "draft-kit"})
    mismatch = await _request(session, name="package.install", payload={"slug": "support-kit", "version": "2.0.0"})
    missing_slug = await _request(session, name="package.install", payload={"version": "1.0.0"})

    assert "not published" in (await runner.run("t1", draft.id)).error
    assert "version mismatch" in (await runner.run("t1", mismatch.id)).error
    assert "requires payload.slug" in (await runner.run("t1", missing_slug.id)).error
    assert await count_rows(session_factory, Installation) == 0


@pytest.mark.asyncio
async def test_package_uninstall_without_installation(session, session_factory, queue) -> None:
    directive = await _request(session, name="package.uninstall", payload={"slug": "support-kit"})

    result = await DirectiveRunner(session_factory=session_factory, queue=queue).run("t1", directive.id)

    assert result.outcome == "succeeded"
    assert result.result["uninstalled"] is False
    assert result.result["reason"] == "not_installed"


@pytest.mark.asyncio
async def test_package_uninstall_with_purge_removes_agents(session, session_factory, queue) -> None:
    await create_package(
        session_factory,
        agents=[
            {"name": "Triage", "system_prompt": "Route tickets."},
            {"name": "Summarizer", "system_prompt": "Summarize threads."},
        ],
    )
    installation = await create_installation(session_factory, tenant_id="t1")
    await PackageInstaller(session_factory=session_factory, queue=queue).run("t1", installation.id)
    async with session_factory() as db:
        # Tenant-authored agent with a matching name but a different prompt survives the purge.
        db.add(Agent(tenant_id="t1", name="Triage", system_prompt="Custom prompt."))
        await db.commit()
    directive = await _request(session, name="package.uninstall", payload={"slug": "support-kit", "purge": "true"})

    result = await DirectiveRunner(session_factory=session_factory, queue=queue).run("t1", directive.id)

    assert result.outcome == "succeeded"
    assert result.result["uninstalled"] is True
    assert result.result["purged_agents"] == 2
    assert [agent.system_prompt for agent in await agents_for(session_factory, "t1")] == ["Custom prompt."]
    assert await count_rows(session_factory, Installation, "t1") == 0
    assert len(await signals_named(session_factory, "t1", "package.uninstall.processed")) == 1


@pytest.mark.asyncio
async def test_package_uninstall_version_mismatch(session, session_factory, queue) -> None:
    await create_installation(session_factory, tenant_id="t1", version="1.0.0")
    directive = await _request(session, name="package.uninstall", payload={"slug": "support-kit", "version": "9.9.9"})

    result = await DirectiveRunner(session_factory=session_factory, queue=queue).run("t1", directive.id)

    assert result.outcome == "failed"
    assert result.retry is False
    assert await count_rows(session_factory, Installation, "t1") == 1


def test_lifecycle_subject_prefers_explicit_subject() -> None:
    class _Directive:
        payload = {"subject": {"type": "ticket", "id": "42"}, "slug": "support-kit"}

    assert lifecycle_subject(_Directive()) == {"type": "ticket", "id": "42"}
    _Directive.payload = {"installation_id": "inst-1", "slug": "support-kit"}
    assert lifecycle_subject(_Directive()) == {"type": "package.installation", "id": "inst-1"}
    _Directive.payload = {"slug": "support-kit"}
    assert lifecycle_subject(_Directive()) == {"type": "package", "id": "support-kit"}
    _Directive.payload = {}
    assert lifecycle_subject(_Directive()) is None
