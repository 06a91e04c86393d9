"""
Connection state machine.

Transitions are pure: ``transition(state, event, max_attempts)`` returns the
next state and the effects the driver must perform, in order. No I/O happens
here, so the reconnect policy can be tested without sockets or timers.

    DISCONNECTED --connect--> CONNECTING --opened--> OPEN
    OPEN --closed--> RECONNECTING --opened--> OPEN
    RECONNECTING --attempts exhausted--> EXHAUSTED (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from paperfeed.feed.types import ConnectionState


class FeedEvent(str, Enum):
    """Inputs to the connection state machine."""

    CONNECT_REQUESTED = "connect_requested"
    OPENED = "opened"
    CONNECT_FAILED = "connect_failed"
    CLOSED = "closed"
    RECONNECT_DUE = "reconnect_due"
    CLOSE_REQUESTED = "close_requested"


class Effect(str, Enum):
    """Side effects requested by a transition."""

    OPEN_SOCKET = "open_socket"
    START_RECEIVER = "start_receiver"
    START_HEARTBEAT = "start_heartbeat"
    STOP_HEARTBEAT = "stop_heartbeat"
    RESUBSCRIBE_ALL = "resubscribe_all"
    SUBSCRIBE_INDICES = "subscribe_indices"
    NOTIFY_CONNECTED = "notify_connected"
    NOTIFY_DISCONNECTED = "notify_disconnected"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    RELEASE_SOCKET = "release_socket"
    SWITCH_TO_MOCK = "switch_to_mock"


@dataclass(frozen=True)
class MachineState:
    phase: ConnectionState = ConnectionState.DISCONNECTED
    attempts: int = 0  # Reconnect attempts since the last successful open


@dataclass(frozen=True)
class Transition:
    state: MachineState
    effects: tuple[Effect, ...] = ()


_ON_OPEN = (
    Effect.START_RECEIVER,
    Effect.START_HEARTBEAT,
    Effect.RESUBSCRIBE_ALL,
    Effect.SUBSCRIBE_INDICES,
    Effect.NOTIFY_CONNECTED,
)


def _retry_or_exhaust(
    state: MachineState, max_attempts: int, leading: tuple[Effect, ...]
) -> Transition:
    if state.attempts < max_attempts:
        return Transition(
            MachineState(ConnectionState.RECONNECTING, state.attempts + 1),
            leading + (Effect.SCHEDULE_RECONNECT,),
        )
    return Transition(
        MachineState(ConnectionState.EXHAUSTED, state.attempts),
        leading + (Effect.SWITCH_TO_MOCK,),
    )


def transition(state: MachineState, event: FeedEvent, max_attempts: int) -> Transition:
    """
    Compute the next state for ``event``.

    Events that make no sense in the current phase (e.g. OPENED while
    DISCONNECTED) leave the state unchanged with no effects.
    """
    phase = state.phase

    if phase == ConnectionState.EXHAUSTED:
        return Transition(state)

    if event == FeedEvent.CLOSE_REQUESTED:
        effects: tuple[Effect, ...] = (Effect.STOP_HEARTBEAT, Effect.RELEASE_SOCKET)
        if phase == ConnectionState.OPEN:
            effects += (Effect.NOTIFY_DISCONNECTED,)
        return Transition(MachineState(ConnectionState.DISCONNECTED, 0), effects)

    if phase == ConnectionState.DISCONNECTED:
        if event == FeedEvent.CONNECT_REQUESTED:
            return Transition(
                MachineState(ConnectionState.CONNECTING, 0), (Effect.OPEN_SOCKET,)
            )

    elif phase == ConnectionState.CONNECTING:
        if event == FeedEvent.OPENED:
            return Transition(MachineState(ConnectionState.OPEN, 0), _ON_OPEN)
        if event == FeedEvent.CONNECT_FAILED:
            # Initial connect failures are reported to the caller, not retried
            return Transition(
                MachineState(ConnectionState.DISCONNECTED, 0), (Effect.RELEASE_SOCKET,)
            )

    elif phase == ConnectionState.OPEN:
        if event == FeedEvent.CLOSED:
            return _retry_or_exhaust(
                state,
                max_attempts,
                (Effect.STOP_HEARTBEAT, Effect.RELEASE_SOCKET, Effect.NOTIFY_DISCONNECTED),
            )

    elif phase == ConnectionState.RECONNECTING:
        if event == FeedEvent.RECONNECT_DUE:
            return Transition(state, (Effect.OPEN_SOCKET,))
        if event == FeedEvent.OPENED:
            return Transition(replace(state, phase=ConnectionState.OPEN, attempts=0), _ON_OPEN)
        if event in (FeedEvent.CONNECT_FAILED, FeedEvent.CLOSED):
            return _retry_or_exhaust(state, max_attempts, (Effect.RELEASE_SOCKET,))

    return Transition(state)
