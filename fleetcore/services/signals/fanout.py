"""Durable fan-out of persisted Signals to the configured handler list.

Handlers are registered explicitly through a ``FanoutConfig`` handed to the
``SignalFanout`` constructor. Each handler declares its call shape through a
``shape`` attribute; nothing is inspected at runtime. Delivery is at-least-once,
so a failing handler causes every earlier handler in the list to run again on
the retry and all handlers must be idempotent.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.core.config import Settings
from fleetcore.core.errors import HandlerError, UnexpectedError, ValidationError, error_message
from fleetcore.domain.models import Signal
from fleetcore.persistence.guards import require_tenant_id
from fleetcore.persistence.repos import signals as signals_repo


logger = logging.getLogger(__name__)

FanoutOutcome = Literal["discarded", "noop", "completed"]


class HandlerShape(str, Enum):
    SIGNAL = "signal"
    SIGNAL_CONTEXT = "signal_context"
    SIGNAL_TENANT_CONTEXT = "signal_tenant_context"


@dataclass(frozen=True)
class HandlerResult:
    ok: bool = True
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> "HandlerResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class FanoutContext:
    tenant: str
    signal_id: str
    signal_name: str
    dedupe_key: str | None
    correlation_id: str | None
    causation_id: str | None
    source: str | None
    occurred_at: datetime | None
    inserted_at: datetime | None
    queue_metadata: dict[str, Any] = field(default_factory=dict)
    raw_args: dict[str, Any] = field(default_factory=dict)
    handler_options: dict[str, Any] = field(default_factory=dict)


class SignalHandler(Protocol):
    shape: Literal[HandlerShape.SIGNAL]

    async def handle_signal(self, signal: Signal) -> HandlerResult | None:
        ...


class ContextSignalHandler(Protocol):
    shape: Literal[HandlerShape.SIGNAL_CONTEXT]

    async def handle_signal(self, signal: Signal, context: FanoutContext) -> HandlerResult | None:
        ...


class TenantSignalHandler(Protocol):
    shape: Literal[HandlerShape.SIGNAL_TENANT_CONTEXT]

    async def handle_signal(self, signal: Signal, tenant: str, context: FanoutContext) -> HandlerResult | None:
        ...


AnySignalHandler = SignalHandler | ContextSignalHandler | TenantSignalHandler


@dataclass(frozen=True)
class HandlerSpec:
    handler: AnySignalHandler
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        handler = self.handler
        return getattr(handler, "name", None) or type(handler).__qualname__


@dataclass(frozen=True)
class FanoutConfig:
    handlers: tuple[HandlerSpec, ...] = ()

    @classmethod
    def of(cls, *handlers: Any) -> "FanoutConfig":
        # Accept bare handlers or (handler, options) pairs.
        specs: list[HandlerSpec] = []
        for entry in handlers:
            if isinstance(entry, HandlerSpec):
                specs.append(entry)
            elif isinstance(entry, tuple):
                handler, options = entry
                specs.append(HandlerSpec(handler=handler, options=dict(options or {})))
            else:
                specs.append(HandlerSpec(handler=entry))
        return cls(handlers=tuple(specs))


def _handler_shape(handler: Any) -> HandlerShape | None:
    declared = getattr(handler, "shape", None)
    if declared is None or not callable(getattr(handler, "handle_signal", None)):
        return None
    try:
        return HandlerShape(declared)
    except ValueError:
        return None


class SignalFanout:
    def __init__(
        self,
        config: FanoutConfig,
        *,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.config = config
        self._session_factory = session_factory

    async def run(
        self,
        tenant_id: str,
        signal_id: str,
        *,
        queue_metadata: dict[str, Any] | None = None,
        raw_args: dict[str, Any] | None = None,
    ) -> FanoutOutcome:
        """Deliver one Signal to every configured handler, in list order.

        Raises ``HandlerError`` when a handler fails so the queue retries the
        whole job.
        """
        tenant_id = require_tenant_id(tenant_id)
        signal = await self._load(tenant_id, signal_id)
        if signal is None:
            logger.info("signal_fanout_discarded tenant=%s signal_id=%s reason=not_found", tenant_id, signal_id)
            return "discarded"
        if not self.config.handlers:
            return "noop"

        for spec in self.config.handlers:
            shape = _handler_shape(spec.handler)
            if shape is None:
                logger.warning(
                    "signal_handler_skipped tenant=%s signal_id=%s handler=%s reason=no_declared_shape",
                    tenant_id,
                    signal_id,
                    spec.label,
                )
                continue
            context = FanoutContext(
                tenant=tenant_id,
                signal_id=signal.id,
                signal_name=signal.name,
                dedupe_key=signal.dedupe_key,
                correlation_id=signal.correlation_id,
                causation_id=signal.causation_id,
                source=signal.source,
                occurred_at=signal.occurred_at,
                inserted_at=signal.inserted_at,
                queue_metadata=dict(queue_metadata or {}),
                raw_args=dict(raw_args or {}),
                handler_options=dict(spec.options),
            )
            await self._invoke(spec, shape, signal, context)
        return "completed"

    async def _load(self, tenant_id: str, signal_id: str) -> Signal | None:
        try:
            async with self._session_factory() as session:
                return await signals_repo.get_signal(session, tenant_id, signal_id)
        except SQLAlchemyError as exc:
            raise UnexpectedError("failed to load signal for fan-out") from exc

    async def _invoke(
        self,
        spec: HandlerSpec,
        shape: HandlerShape,
        signal: Signal,
        context: FanoutContext,
    ) -> None:
        handler = spec.handler
        try:
            if shape is HandlerShape.SIGNAL:
                result = await handler.handle_signal(signal)
            elif shape is HandlerShape.SIGNAL_CONTEXT:
                result = await handler.handle_signal(signal, context)
            else:
                result = await handler.handle_signal(signal, context.tenant, context)
        except HandlerError:
            raise
        except Exception as exc:
            logger.warning(
                "signal_handler_raised tenant=%s signal_id=%s handler=%s error=%s",
                context.tenant,
                context.signal_id,
                spec.label,
                exc.__class__.__name__,
            )
            raise HandlerError(f"handler {spec.label} raised: {error_message(exc)}") from exc

        if isinstance(result, HandlerResult) and not result.ok:
            logger.warning(
                "signal_handler_failed tenant=%s signal_id=%s handler=%s error=%s",
                context.tenant,
                context.signal_id,
                spec.label,
                result.error,
            )
            raise HandlerError(f"handler {spec.label} failed: {result.error or 'unknown error'}")


def _resolve(path: str) -> Any:
    module_path, sep, attr = path.partition(":")
    if not sep:
        module_path, _, attr = path.rpartition(".")
    if not module_path or not attr:
        raise ValidationError(f"invalid signal handler path {path!r}")
    try:
        target = getattr(importlib.import_module(module_path), attr)
    except (ImportError, AttributeError) as exc:
        raise ValidationError(f"cannot import signal handler {path!r}") from exc
    # Classes are instantiated once at startup; module-level instances are used as-is.
    return target() if inspect.isclass(target) else target


def load_fanout_config(settings: Settings) -> FanoutConfig:
    # Resolve the configured handler list once at process startup.
    paths = [item.strip() for item in (settings.signal_handlers or "").split(",") if item.strip()]
    return FanoutConfig.of(*(_resolve(path) for path in paths))
