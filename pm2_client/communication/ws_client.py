# -*- coding: utf-8 -*-
"""
WebSocket client module: the agent's duplex stream to the controller.

The connection is an explicit state machine (see ``ConnectionState``). Every
transition happens under one lock, and the publish timer and reconnect timer
are owned handles that are cancelled before being replaced.
"""
import functools
import json
import threading
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import websocket

from pm2_client.core.agent_state import ALLOWED_TRANSITIONS, ConnectionState
from pm2_client.core.models import RemoteCommand
from pm2_client.errors import ProtocolError, StreamConnectionError
from pm2_client.utils import RepeatingTimer, get_logger

if TYPE_CHECKING:
    from pm2_client.core.action_queue import ActionQueue

logger = get_logger(__name__)

ACTION_STATUS = "action"

AppFactory = Callable[..., websocket.WebSocketApp]


def decode_actions(raw: Any) -> List[RemoteCommand]:
    """
    Decodes an inbound controller message into remote commands.

    Messages that are not action batches decode to an empty list. Individual
    malformed entries are logged and skipped.

    :param raw: Text or bytes frame received from the controller
    :return: Commands in the order the controller sent them
    :rtype: List[RemoteCommand]
    :raises ProtocolError: If the frame is not JSON or an action batch is malformed
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode('utf-8')
        message = json.loads(raw)
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        raise ProtocolError(f"Could not decode message: {e}") from e

    if not isinstance(message, dict) or message.get('status') != ACTION_STATUS:
        return []

    actions = message.get('actions')
    if not isinstance(actions, list):
        raise ProtocolError(f"Action message without an 'actions' list: {message!r}")

    commands = []
    for entry in actions:
        try:
            commands.append(RemoteCommand.from_wire(entry))
        except ProtocolError as e:
            logger.warning(f"Skipping action entry: {e}")
    return commands


class WSClient:
    """
    Manages the WebSocket connection, the periodic status publish, and the
    dispatch of inbound action batches to the action queue.
    """

    def __init__(self, server_url: str,
                 action_queue: 'ActionQueue',
                 status_provider: Callable[[], Dict[str, Any]],
                 publish_interval: float = 1.0,
                 reconnect_delay: float = 5.0,
                 app_factory: Optional[AppFactory] = None):
        """
        Initialize the WebSocket client.

        :param server_url: Controller endpoint, e.g. ``ws://localhost:7000``
        :type server_url: str
        :param action_queue: Queue receiving decoded remote commands
        :type action_queue: ActionQueue
        :param status_provider: Returns the status message to publish on each tick
        :type status_provider: Callable[[], Dict[str, Any]]
        :param publish_interval: Seconds between status messages
        :type publish_interval: float
        :param reconnect_delay: Seconds between a close event and the next connection attempt
        :type reconnect_delay: float
        :param app_factory: Builds the socket app; defaults to ``websocket.WebSocketApp``
        :raises ValueError: If server_url is empty
        """
        if not server_url:
            raise ValueError("Server URL (server_url) is required.")

        self.server_url = server_url
        self.action_queue = action_queue
        self.status_provider = status_provider
        self.publish_interval = publish_interval
        self.reconnect_delay = reconnect_delay
        self._app_factory: AppFactory = app_factory or websocket.WebSocketApp

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[websocket.WebSocketApp] = None
        self._ws_thread: Optional[threading.Thread] = None
        self._publish_timer: Optional[RepeatingTimer] = None
        self._timer_generation = 0
        self._reconnect_timer: Optional[threading.Timer] = None
        self._closed = False

        logger.info(f"WebSocket Config: URL={self.server_url}, Publish Interval={self.publish_interval}s, "
                    f"Reconnect Delay={self.reconnect_delay}s")

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    # === LIFECYCLE ===

    def start(self):
        """Opens the first connection. Later connections are made by the reconnect path."""
        with self._lock:
            if self._closed:
                logger.warning("WebSocket client was closed; start ignored.")
                return
            if self._state is not ConnectionState.DISCONNECTED or self._reconnect_timer is not None:
                logger.warning("Connection attempt skipped: Already connected or connecting.")
                return
        self._connect()

    def close(self, timeout: float = 2.0):
        """
        Closes the stream for good: no reconnect is scheduled afterwards.

        :param timeout: Seconds to wait for the socket thread to finish
        :type timeout: float
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            ws = self._ws
            thread = self._ws_thread
            timer = self._take_publish_timer()
            self._cancel_reconnect()
            if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
                self._transition(ConnectionState.CLOSING)

        logger.info("Closing WebSocket connection...")
        if timer:
            timer.cancel(join_timeout=timeout)
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                logger.error(f"An error occurred during WebSocket disconnection: {e}", exc_info=True)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

        with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED)
        logger.info("WebSocket connection closed.")

    # === TRANSITIONS ===

    def _transition(self, new_state: ConnectionState) -> bool:
        """Moves to ``new_state`` if allowed. Caller holds ``self._lock``."""
        if new_state is self._state:
            return False
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            logger.warning(f"Blocked connection state transition: {self._state.name} -> {new_state.name}")
            return False
        logger.debug(f"Connection state: {self._state.name} -> {new_state.name}")
        self._state = new_state
        return True

    def _connect(self):
        """DISCONNECTED -> CONNECTING: builds a new socket app and runs it on its own thread."""
        with self._lock:
            self._reconnect_timer = None
            if self._closed or not self._transition(ConnectionState.CONNECTING):
                return
            try:
                ws = self._app_factory(
                    self.server_url,
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
            except Exception as e:
                error = StreamConnectionError(f"Could not create WebSocket for {self.server_url}: {e}")
                logger.error(str(error), exc_info=True)
                self._transition(ConnectionState.DISCONNECTED)
                self._schedule_reconnect()
                return
            self._ws = ws
            self._ws_thread = threading.Thread(target=self._run_socket, args=(ws,),
                                               name="WebSocketThread", daemon=True)
            thread = self._ws_thread
        logger.info(f"Connecting to WebSocket server at {self.server_url}...")
        thread.start()

    def _run_socket(self, ws: websocket.WebSocketApp):
        try:
            ws.run_forever(reconnect=0)
        except Exception as e:
            logger.error(f"WebSocket run loop failed: {StreamConnectionError(e)}", exc_info=True)
        finally:
            self._on_stream_closed(ws)

    def _on_open(self, ws: websocket.WebSocketApp):
        """CONNECTING -> OPEN: starts a fresh publish timer, replacing any previous one."""
        with self._lock:
            if ws is not self._ws or self._closed:
                return
            if not self._transition(ConnectionState.OPEN):
                return
            old_timer = self._take_publish_timer()
            self._timer_generation += 1
            self._publish_timer = RepeatingTimer(
                self.publish_interval,
                functools.partial(self._publish_tick, self._timer_generation),
                name=f"PublishTimer-{self._timer_generation}",
            )
            self._publish_timer.start()
        if old_timer:
            old_timer.cancel()
        logger.info("Connected to WebSocket server.")

    def _on_close(self, ws: websocket.WebSocketApp, close_status_code=None, close_msg=None):
        logger.info(f"WebSocket closed (code={close_status_code}, reason={close_msg or 'n/a'}).")
        self._on_stream_closed(ws)

    def _on_error(self, ws: websocket.WebSocketApp, error: Any):
        if ws is not self._ws:
            return
        logger.error(f"WebSocket error: {StreamConnectionError(error)}")

    def _on_stream_closed(self, ws: websocket.WebSocketApp):
        """
        Any -> DISCONNECTED for the current socket; schedules the reconnect
        unless the client was closed. Safe to call more than once per socket.
        """
        with self._lock:
            if ws is not self._ws or self._state is ConnectionState.DISCONNECTED:
                return
            self._transition(ConnectionState.DISCONNECTED)
            timer = self._take_publish_timer()
            reconnect = not self._closed
            if reconnect:
                self._schedule_reconnect()
        if timer:
            timer.cancel(join_timeout=1.0)
        if reconnect:
            logger.info(f"Disconnected from WebSocket server, attempting to reconnect in {self.reconnect_delay}s...")

    def _handle_send_failure(self, ws: websocket.WebSocketApp):
        """OPEN -> CLOSING: stops publishing and closes the socket; the close event reconnects."""
        with self._lock:
            if ws is not self._ws or self._closed or self._state is not ConnectionState.OPEN:
                return
            self._transition(ConnectionState.CLOSING)
            timer = self._take_publish_timer()
        if timer:
            timer.cancel()
        try:
            ws.close()
        except Exception as e:
            logger.error(f"Error closing WebSocket after send failure: {e}", exc_info=True)

    # === TIMERS ===

    def _take_publish_timer(self) -> Optional[RepeatingTimer]:
        """Detaches the publish timer handle. Caller holds ``self._lock`` and cancels the result."""
        timer = self._publish_timer
        self._publish_timer = None
        self._timer_generation += 1
        return timer

    def _schedule_reconnect(self):
        self._cancel_reconnect()
        self._reconnect_timer = threading.Timer(self.reconnect_delay, self._connect)
        self._reconnect_timer.name = "ReconnectTimer"
        self._reconnect_timer.daemon = True
        self._reconnect_timer.start()

    def _cancel_reconnect(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # === PUBLISH AND DISPATCH ===

    @staticmethod
    def _socket_open(ws: Optional[websocket.WebSocketApp]) -> bool:
        sock = getattr(ws, 'sock', None)
        return bool(sock is not None and sock.connected)

    def _publish_tick(self, generation: int):
        with self._lock:
            if generation != self._timer_generation or self._closed:
                return
            ws = self._ws

        try:
            status = self.status_provider()
            payload = json.dumps(status, default=str)
        except Exception as e:
            logger.error(f"Failed to build status message: {e}", exc_info=True)
            return

        with self._lock:
            if generation != self._timer_generation:
                return
            is_open = self._state is ConnectionState.OPEN and self._socket_open(ws)
            state_name = self._state.name
        if not is_open:
            logger.warning(f"WebSocket is not open. Current state: {state_name}")
            self._handle_send_failure(ws)
            return

        try:
            ws.send(payload)
        except (websocket.WebSocketException, OSError) as e:
            logger.error(f"Error sending status update: {StreamConnectionError(e)}")
            self._handle_send_failure(ws)

    def _on_message(self, ws: websocket.WebSocketApp, message: Any):
        if ws is not self._ws:
            return
        try:
            commands = decode_actions(message)
        except ProtocolError as e:
            logger.warning(f"Dropping inbound message: {e}")
            return
        if not commands:
            return

        logger.info(f"Received actions from server: {', '.join(str(c) for c in commands)}")
        queued = sum(1 for command in commands if self.action_queue.enqueue(command))
        if queued:
            self.action_queue.start()
