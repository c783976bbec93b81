"""
State machine of a plugin connection.

``transition`` is a pure function of (state, event) returning the next state and the
effects the connection has to perform; it holds no reference to any session or channel.
"""
from enum import Enum
from typing import NamedTuple


class ConnectionState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_HANDSHAKE = "awaitingHandshake"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ConnectionEvent(str, Enum):
    SETUP_COMPLETE = "setupComplete"
    SETUP_FAILED = "setupFailed"
    INITIALIZED = "initialized"
    CHANNEL_LOST = "channelLost"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnectFailed"
    DISCONNECT = "disconnect"


class Effect(str, Enum):
    NOTIFY_INIT = "notifyInit"
    NOTIFY_FAILED = "notifyFailed"
    NOTIFY_DISCONNECT = "notifyDisconnect"
    REOPEN_CHANNEL = "reopenChannel"
    FLUSH_OUTBOX = "flushOutbox"
    TEARDOWN_SESSION = "teardownSession"
    REJECT_PENDING = "rejectPending"


class Transition(NamedTuple):
    state: ConnectionState
    effects: tuple[Effect, ...] = ()


TERMINAL_STATES = frozenset({ConnectionState.DISCONNECTED, ConnectionState.FAILED})

_TABLE: dict[tuple[ConnectionState, ConnectionEvent], Transition] = {
    (ConnectionState.INITIALIZING, ConnectionEvent.SETUP_COMPLETE):
        Transition(ConnectionState.AWAITING_HANDSHAKE),
    (ConnectionState.INITIALIZING, ConnectionEvent.SETUP_FAILED):
        Transition(ConnectionState.FAILED, (Effect.REJECT_PENDING, Effect.NOTIFY_FAILED)),
    (ConnectionState.AWAITING_HANDSHAKE, ConnectionEvent.SETUP_FAILED):
        Transition(ConnectionState.FAILED, (Effect.REJECT_PENDING, Effect.NOTIFY_FAILED)),
    (ConnectionState.AWAITING_HANDSHAKE, ConnectionEvent.INITIALIZED):
        Transition(ConnectionState.READY, (Effect.NOTIFY_INIT, Effect.FLUSH_OUTBOX)),
    (ConnectionState.READY, ConnectionEvent.INITIALIZED):
        Transition(ConnectionState.READY, (Effect.NOTIFY_INIT,)),
    (ConnectionState.AWAITING_HANDSHAKE, ConnectionEvent.CHANNEL_LOST):
        Transition(ConnectionState.RECONNECTING, (Effect.REOPEN_CHANNEL,)),
    (ConnectionState.READY, ConnectionEvent.CHANNEL_LOST):
        Transition(ConnectionState.RECONNECTING, (Effect.REOPEN_CHANNEL,)),
    (ConnectionState.RECONNECTING, ConnectionEvent.RECONNECTED):
        Transition(ConnectionState.READY, (Effect.FLUSH_OUTBOX,)),
    (ConnectionState.RECONNECTING, ConnectionEvent.RECONNECT_FAILED):
        Transition(ConnectionState.RECONNECTING),
    (ConnectionState.FAILED, ConnectionEvent.DISCONNECT):
        Transition(ConnectionState.DISCONNECTED, (Effect.TEARDOWN_SESSION, Effect.NOTIFY_DISCONNECT)),
}

_DISCONNECT = Transition(
    ConnectionState.DISCONNECTED,
    (Effect.REJECT_PENDING, Effect.TEARDOWN_SESSION, Effect.NOTIFY_DISCONNECT),
)


def transition(state: ConnectionState, event: ConnectionEvent) -> Transition:
    """Next state and effects for ``event``; unknown pairs leave the state untouched."""
    if (state, event) in _TABLE:
        return _TABLE[(state, event)]
    if event == ConnectionEvent.DISCONNECT and state not in TERMINAL_STATES:
        return _DISCONNECT
    return Transition(state)
