"""Context variables carried into every log record.

Values set here are picked up by JSONFormatter/ConsoleFormatter, so a worker
sets its stage and worker id once and each message handler sets its event id.
"""

from contextvars import ContextVar

_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")
_stage: ContextVar[str] = ContextVar("stage", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_event_id: ContextVar[str] = ContextVar("event_id", default="")
_instance_id: ContextVar[str] = ContextVar("instance_id", default="")

_LOG_VARS: dict[str, ContextVar[str]] = {
    "cycle_id": _cycle_id,
    "stage": _stage,
    "worker_id": _worker_id,
    "event_id": _event_id,
    "instance_id": _instance_id,
}


def set_log_context(
    cycle_id: str | None = None,
    stage: str | None = None,
    worker_id: str | None = None,
    event_id: str | None = None,
    instance_id: str | int | None = None,
) -> None:
    """Set log context fields. Arguments left as None keep their current value."""
    values = {
        "cycle_id": cycle_id,
        "stage": stage,
        "worker_id": worker_id,
        "event_id": event_id,
        "instance_id": instance_id,
    }
    for name, value in values.items():
        if value is not None:
            _LOG_VARS[name].set(str(value))


def get_log_context() -> dict[str, str]:
    return {name: var.get() for name, var in _LOG_VARS.items()}


def clear_log_context() -> None:
    for var in _LOG_VARS.values():
        var.set("")
