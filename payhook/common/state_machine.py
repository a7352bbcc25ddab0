"""Lifecycle transitions for product jobs and scheduled triggers."""

ALLOWED_JOB_TRANSITIONS: dict[str, set[str]] = {
    "RUNNING": {"SUCCEEDED", "FAILED"},
    "SUCCEEDED": set(),
    "FAILED": set(),
}

ALLOWED_SCHEDULE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"fired", "canceled"},
    "fired": set(),
    "canceled": set(),
}


def validate_transition(current: str, new: str, allowed: dict[str, set[str]] = ALLOWED_JOB_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in allowed.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def validate_schedule_transition(current: str, new: str) -> None:
    """Schedules only move forward: pending -> fired | canceled."""

    validate_transition(current, new, ALLOWED_SCHEDULE_TRANSITIONS)
