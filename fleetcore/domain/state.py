from __future__ import annotations

from enum import Enum

from fleetcore.core.errors import IllegalTransitionError


class DirectiveStatus(str, Enum):
    REQUESTED = "requested"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class DirectiveTransition(str, Enum):
    MARK_RUNNING = "mark_running"
    MARK_SUCCEEDED = "mark_succeeded"
    MARK_FAILED = "mark_failed"
    CANCEL = "cancel"


class InstallationStatus(str, Enum):
    REQUESTED = "requested"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"
    DISABLED = "disabled"


TERMINAL_DIRECTIVE_STATUSES = frozenset(
    {DirectiveStatus.SUCCEEDED, DirectiveStatus.FAILED, DirectiveStatus.CANCELED}
)
PENDING_DIRECTIVE_STATUSES = frozenset({DirectiveStatus.REQUESTED, DirectiveStatus.RUNNING})

# Source statuses each transition accepts without an override, and where it lands.
_DIRECTIVE_TRANSITIONS: dict[DirectiveTransition, tuple[frozenset[DirectiveStatus], DirectiveStatus]] = {
    DirectiveTransition.MARK_RUNNING: (frozenset({DirectiveStatus.REQUESTED}), DirectiveStatus.RUNNING),
    DirectiveTransition.MARK_SUCCEEDED: (frozenset({DirectiveStatus.RUNNING}), DirectiveStatus.SUCCEEDED),
    DirectiveTransition.MARK_FAILED: (frozenset({DirectiveStatus.RUNNING}), DirectiveStatus.FAILED),
    DirectiveTransition.CANCEL: (PENDING_DIRECTIVE_STATUSES, DirectiveStatus.CANCELED),
}


def directive_transition(
    current: DirectiveStatus | str,
    transition: DirectiveTransition,
    *,
    override: bool = False,
) -> DirectiveStatus:
    """Return the status ``transition`` moves a directive to from ``current``.

    ``override`` is the caller's explicit rerun opt-in: it lets a terminal
    directive be picked up again (or re-finalized) but never re-canceled.
    """
    status = DirectiveStatus(current)
    allowed, target = _DIRECTIVE_TRANSITIONS[transition]
    if status in allowed:
        return target
    if override and status in TERMINAL_DIRECTIVE_STATUSES and transition is not DirectiveTransition.CANCEL:
        return target
    raise IllegalTransitionError(status.value, transition.value)


def is_terminal(status: DirectiveStatus | str) -> bool:
    return DirectiveStatus(status) in TERMINAL_DIRECTIVE_STATUSES


def is_pending(status: DirectiveStatus | str) -> bool:
    return DirectiveStatus(status) in PENDING_DIRECTIVE_STATUSES


class InstallationTransition(str, Enum):
    MARK_INSTALLING = "mark_installing"
    MARK_INSTALLED = "mark_installed"
    MARK_FAILED = "mark_failed"
    DISABLE = "disable"
    ENABLE = "enable"


_ACTIVE_INSTALLATION_STATUSES = frozenset(
    {
        InstallationStatus.REQUESTED,
        InstallationStatus.INSTALLING,
        InstallationStatus.INSTALLED,
        InstallationStatus.FAILED,
    }
)

# Installer retries re-enter "installing" from any active status; only enable leaves "disabled".
_INSTALLATION_TRANSITIONS: dict[
    InstallationTransition, tuple[frozenset[InstallationStatus], InstallationStatus | None]
] = {
    InstallationTransition.MARK_INSTALLING: (_ACTIVE_INSTALLATION_STATUSES, InstallationStatus.INSTALLING),
    InstallationTransition.MARK_INSTALLED: (
        frozenset({InstallationStatus.INSTALLING, InstallationStatus.INSTALLED}),
        InstallationStatus.INSTALLED,
    ),
    InstallationTransition.MARK_FAILED: (_ACTIVE_INSTALLATION_STATUSES, InstallationStatus.FAILED),
    InstallationTransition.DISABLE: (
        _ACTIVE_INSTALLATION_STATUSES | {InstallationStatus.DISABLED},
        InstallationStatus.DISABLED,
    ),
    # Enable restores "installed" or "requested" depending on whether an install ever completed.
    InstallationTransition.ENABLE: (frozenset({InstallationStatus.DISABLED}), None),
}


def installation_transition(
    current: InstallationStatus | str,
    transition: InstallationTransition,
    *,
    previously_installed: bool = False,
) -> InstallationStatus:
    status = InstallationStatus(current)
    allowed, target = _INSTALLATION_TRANSITIONS[transition]
    if status not in allowed:
        raise IllegalTransitionError(status.value, transition.value)
    if target is None:
        return InstallationStatus.INSTALLED if previously_installed else InstallationStatus.REQUESTED
    return target
