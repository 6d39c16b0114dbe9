"""Per-pipeline process lifecycle state machine using ``transitions``.

Idle -> Starting -> Running -> Stopping -> Idle.  Failed stops return
to Running (the old process is still up), failed starts return to Idle.
"""

from __future__ import annotations

from typing import Any

from transitions.extensions.asyncio import AsyncMachine, AsyncState

STATES: list[AsyncState] = [
    AsyncState("idle"),
    AsyncState("starting"),
    AsyncState("running"),
    AsyncState("stopping"),
]

TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "begin_start", "source": "idle", "dest": "starting"},
    {"trigger": "started", "source": "starting", "dest": "running"},
    {"trigger": "start_failed", "source": "starting", "dest": "idle"},
    {"trigger": "begin_stop", "source": "running", "dest": "stopping"},
    {"trigger": "stopped", "source": "stopping", "dest": "idle"},
    {"trigger": "stop_failed", "source": "stopping", "dest": "running"},
    # A recorded pid we did not start ourselves.
    {"trigger": "adopt", "source": "idle", "dest": "running"},
    # The process died on its own.
    {"trigger": "exited", "source": "running", "dest": "idle"},
]


def create_lifecycle_machine(model: Any, initial_state: str = "idle") -> AsyncMachine:
    """Create an ``AsyncMachine`` bound to *model*.

    Triggers are exposed as coroutine methods on *model*
    (``await model.begin_stop()``).  Invalid triggers raise
    ``transitions.MachineError`` so a lifecycle bug cannot pass silently.
    """
    return AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=False,
        ignore_invalid_triggers=False,
    )
