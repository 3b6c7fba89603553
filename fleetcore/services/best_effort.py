from __future__ import annotations

import logging
from typing import Any, Awaitable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(operation: str, awaitable: Awaitable[T], **context: Any) -> T | None:
    """Await a secondary side effect, logging and discarding any failure.

    Lifecycle signal emission, install-counter bumps, and directive
    cross-linking all go through here so the primary path never fails
    because of them. Primary-path code must not use this wrapper.
    """
    try:
        return await awaitable
    except Exception as exc:  # noqa: BLE001 - secondary side effects never fail the caller
        details = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        logger.warning(
            "best_effort_failed operation=%s %s error=%s",
            operation,
            details,
            exc.__class__.__name__,
            exc_info=exc,
        )
        return None
