from __future__ import annotations


class FleetError(Exception):
    """Base error for fleetcore."""

    # Workers re-deliver retryable failures; everything else is acknowledged after recording.
    retryable: bool = False


class NotFoundError(FleetError):
    """Entity is absent from the tenant partition; never retried."""


class ValidationError(FleetError):
    """Bad name pattern, non-JSON payload, or missing required field."""


class VersionMismatchError(FleetError):
    """Requested package version differs from the registered one."""


class IllegalTransitionError(FleetError):
    """Lifecycle transition is not allowed from the current status."""

    def __init__(self, current: str, transition: str) -> None:
        super().__init__(f"illegal transition {transition} from status {current}")
        self.current = current
        self.transition = transition


class HandlerError(FleetError):
    """Business logic failure inside a dispatch target."""

    retryable = True


class UnexpectedError(FleetError):
    """Storage or infrastructure failure."""

    retryable = True


def is_retryable(exc: BaseException) -> bool:
    # Unknown exceptions are treated as infrastructure failures.
    if isinstance(exc, FleetError):
        return exc.retryable
    return True


def error_message(exc: BaseException) -> str:
    # Keep persisted error strings short and free of stack traces.
    message = str(exc).strip()
    return message or exc.__class__.__name__
