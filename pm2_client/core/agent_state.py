"""
Defines the operational states of the agent and of its controller connection.
"""
from enum import Enum, auto


class AgentState(Enum):
    """
    Lifecycle of the agent process.

    States:
        STARTING: Connecting to PM2 and gathering static telemetry
        RUNNING: Publishing telemetry and accepting remote commands
        SHUTTING_DOWN: A termination signal was received; no new command may start
        STOPPED: Stream and supervisor connection released
    """
    STARTING = auto()
    RUNNING = auto()
    SHUTTING_DOWN = auto()
    STOPPED = auto()


class ConnectionState(Enum):
    """
    State of the duplex stream to the controller.

    Transitions (owned by the connection manager only):
        DISCONNECTED -> CONNECTING: on startup, or after the reconnect backoff
        CONNECTING -> OPEN: handshake completed, publish loop started
        OPEN -> CLOSING: send failure or stream found not open during a publish tick
        CONNECTING/OPEN/CLOSING -> DISCONNECTED: stream closed or failed
    """
    DISCONNECTED = auto()
    CONNECTING = auto()
    OPEN = auto()
    CLOSING = auto()


ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.OPEN, ConnectionState.CLOSING, ConnectionState.DISCONNECTED},
    ConnectionState.OPEN: {ConnectionState.CLOSING, ConnectionState.DISCONNECTED},
    ConnectionState.CLOSING: {ConnectionState.DISCONNECTED},
}
