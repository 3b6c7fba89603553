from __future__ import annotations

from fleetcore.services.signals.bus import EmitResult, emit
from fleetcore.services.signals.fanout import (
    ContextSignalHandler,
    FanoutConfig,
    FanoutContext,
    HandlerResult,
    HandlerShape,
    HandlerSpec,
    SignalFanout,
    SignalHandler,
    TenantSignalHandler,
    load_fanout_config,
)
from fleetcore.services.signals.replay import (
    ReplayResult,
    replay_by_ids,
    replay_by_name,
    replay_by_time_range,
    replay_recent,
)

__all__ = [
    "ContextSignalHandler",
    "EmitResult",
    "FanoutConfig",
    "FanoutContext",
    "HandlerResult",
    "HandlerShape",
    "HandlerSpec",
    "ReplayResult",
    "SignalFanout",
    "SignalHandler",
    "TenantSignalHandler",
    "emit",
    "load_fanout_config",
    "replay_by_ids",
    "replay_by_name",
    "replay_by_time_range",
    "replay_recent",
]
