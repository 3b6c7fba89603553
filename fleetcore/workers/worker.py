from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from arq import Retry
from arq.connections import RedisSettings
from arq.worker import func

from fleetcore.core.config import get_settings
from fleetcore.core.errors import error_message, is_retryable
from fleetcore.core.logging import configure_logging
from fleetcore.persistence.db import SessionLocal
from fleetcore.services.directives.runner import DirectiveRunner
from fleetcore.services.packages.installer import PackageInstaller
from fleetcore.services.queue import (
    FANOUT_SIGNAL_JOB,
    INSTALL_PACKAGE_JOB,
    RUN_DIRECTIVE_JOB,
    ArqJobQueue,
    retry_backoff_ms,
    truthy,
)
from fleetcore.services.signals.fanout import SignalFanout, load_fanout_config


logger = logging.getLogger(__name__)


def _retry_or_acknowledge(exc: Exception, *, job_key: str, job_try: int, max_tries: int) -> str:
    # Retryable failures go back to arq with backoff; permanent ones are acknowledged.
    if is_retryable(exc) and job_try < max_tries:
        defer = timedelta(milliseconds=retry_backoff_ms(job_key=job_key, attempt_no=job_try))
        logger.warning(
            "job_retry job=%s try=%s defer_ms=%s error=%s",
            job_key,
            job_try,
            int(defer.total_seconds() * 1000),
            error_message(exc),
        )
        raise Retry(defer=defer) from exc
    logger.error("job_failed job=%s try=%s error=%s", job_key, job_try, error_message(exc), exc_info=exc)
    return "failed"


def _queue_metadata(ctx: dict[str, Any]) -> dict[str, Any]:
    return {
        "job_id": ctx.get("job_id"),
        "job_try": ctx.get("job_try", 1),
        "enqueue_time": ctx["enqueue_time"].isoformat() if ctx.get("enqueue_time") else None,
    }


async def run_directive(ctx, tenant: str, directive_id: str, rerun: Any = False, force: Any = False) -> str:
    # The job carries references only; the runner reloads the directive before acting.
    runner: DirectiveRunner = ctx["directive_runner"]
    job_try = int(ctx.get("job_try", 1))
    max_tries = max(1, int(get_settings().worker_max_tries))
    job_key = f"{RUN_DIRECTIVE_JOB}:{directive_id}"
    try:
        result = await runner.run(
            tenant,
            directive_id,
            rerun=truthy(rerun),
            force=truthy(force),
            job_try=job_try,
            job_id=ctx.get("job_id"),
        )
    except Exception as exc:  # noqa: BLE001 - translate into arq retry semantics
        return _retry_or_acknowledge(exc, job_key=job_key, job_try=job_try, max_tries=max_tries)
    if result.retry and job_try < max_tries:
        defer = timedelta(milliseconds=retry_backoff_ms(job_key=job_key, attempt_no=job_try))
        raise Retry(defer=defer)
    return result.outcome


async def fanout_signal(ctx, tenant: str, signal_id: str, **raw_args: Any) -> str:
    fanout: SignalFanout = ctx["signal_fanout"]
    job_try = int(ctx.get("job_try", 1))
    max_tries = max(1, int(get_settings().worker_max_tries))
    try:
        return await fanout.run(
            tenant,
            signal_id,
            queue_metadata=_queue_metadata(ctx),
            raw_args={"tenant": tenant, "signal_id": signal_id, **raw_args},
        )
    except Exception as exc:  # noqa: BLE001 - translate into arq retry semantics
        return _retry_or_acknowledge(
            exc,
            job_key=f"{FANOUT_SIGNAL_JOB}:{signal_id}",
            job_try=job_try,
            max_tries=max_tries,
        )


async def install_package(ctx, tenant: str, installation_id: str) -> str:
    installer: PackageInstaller = ctx["package_installer"]
    job_try = int(ctx.get("job_try", 1))
    max_tries = max(1, int(get_settings().installer_max_tries))
    try:
        return await installer.run(tenant, installation_id, job_metadata=_queue_metadata(ctx))
    except Exception as exc:  # noqa: BLE001 - translate into arq retry semantics
        return _retry_or_acknowledge(
            exc,
            job_key=f"{INSTALL_PACKAGE_JOB}:{installation_id}",
            job_try=job_try,
            max_tries=max_tries,
        )


async def _startup(ctx) -> None:
    # Build collaborators once per worker process; the handler list is fixed for its lifetime.
    settings = get_settings()
    configure_logging()
    queue = ArqJobQueue()
    ctx["job_queue"] = queue
    ctx["signal_fanout"] = SignalFanout(load_fanout_config(settings), session_factory=SessionLocal)
    ctx["directive_runner"] = DirectiveRunner(session_factory=SessionLocal, queue=queue)
    ctx["package_installer"] = PackageInstaller(session_factory=SessionLocal, queue=queue)
    logger.info(
        "worker_started queue=%s signal_handlers=%s",
        settings.queue_name,
        len(ctx["signal_fanout"].config.handlers),
    )


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_name
    max_tries = max(1, int(settings.worker_max_tries))
    job_timeout = max(1, int(settings.worker_job_timeout_s))
    functions = [
        func(run_directive, name=RUN_DIRECTIVE_JOB),
        func(fanout_signal, name=FANOUT_SIGNAL_JOB),
        func(install_package, name=INSTALL_PACKAGE_JOB, max_tries=max(1, int(settings.installer_max_tries))),
    ]
    on_startup = _startup
