"""
Connection to the protocol worker of one plugin.

The worker runs inside a kernel and talks to the engine over a comm. ``Connection``
installs and starts the worker, waits for its ``initialized`` handshake, routes the
control messages it sends, and reopens the comm when it is lost. State changes go
through the pure ``transition`` table; this class only performs the effects.
"""
import asyncio
import itertools
from collections import OrderedDict
from typing import Any, Callable, Optional

from jupyter_engine.entities.connection_state import (
    TERMINAL_STATES,
    ConnectionEvent,
    ConnectionState,
    Effect,
    Transition,
    transition,
)
from jupyter_engine.entities.envelope import Envelope, MessageKind
from jupyter_engine.entities.kernel_entry import KernelStatus
from jupyter_engine.frameworks_drivers.config import ReconnectPolicy, WorkerConfig
from jupyter_engine.shared.console_text import normalize_stream_text
from jupyter_engine.shared.errors import (
    ChannelLost,
    ConnectionClosedError,
    ConnectionSetupError,
    ExecutionFailure,
)
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import (
    ChannelProtocol,
    KernelSessionProtocol,
    SessionKiller,
    StatusSinkProtocol,
)

logger = Logger.get(__name__)

RECOVER_CLIENT_CODE = (
    'from imjoy.workers.jupyter_client import JupyterClient;'
    'JupyterClient.recover_client("{client_id}")'
)
START_WORKER_CODE = (
    'from imjoy.workers.python_worker import PluginConnection as __plugin_connection__;'
    '__plugin_connection__.add_plugin("{plugin_id}", "{client_id}").start()'
)


class Connection:
    """
    Request/response channel to a plugin worker running in a kernel.

    Args:
        id: Plugin id the worker is started for.
        session: Kernel the worker runs in. The connection does not own it, but shuts
            it down (through ``session_killer`` when given) on disconnect.
        worker: Worker package and comm target prefix.
        reconnect_policy: Attempts and backoff used when the comm has to be reopened.
        client_id: Stable id of the worker client; defaults to ``id``.
        status: Sink narrating the setup progress.
        session_killer: Coroutine function used instead of ``session.shutdown()``.
    """

    def __init__(self, id: str, session: KernelSessionProtocol, worker: Optional[WorkerConfig] = None,
                 reconnect_policy: Optional[ReconnectPolicy] = None, client_id: Optional[str] = None,
                 status: Optional[StatusSinkProtocol] = None, session_killer: Optional[SessionKiller] = None):
        self.id = id
        self.client_id = client_id or id
        self.session = session
        self.worker = worker or WorkerConfig()
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.status = status
        self.session_killer = session_killer
        self.dedicated_thread: Optional[bool] = None
        self.channel: Optional[ChannelProtocol] = None

        self._state = ConnectionState.INITIALIZING
        self._error: Optional[Exception] = None
        self._initialized = False
        self._settled = asyncio.Event()
        self._pending: OrderedDict[str, asyncio.Future] = OrderedDict()
        self._outbox: list[tuple[dict, asyncio.Future]] = []
        self._request_ids = itertools.count(1)
        self._reconnect_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._disconnect_notified = False

        self._init_handler: Optional[Callable[[], None]] = None
        self._fail_handler: Optional[Callable[[Exception], None]] = None
        self._disconnect_handler: Optional[Callable[[Any], None]] = None
        self._logging_handler: Optional[Callable[[Any], None]] = None
        self._message_handler: Optional[Callable[[Any], None]] = None

        self._dispatch: dict[MessageKind, Callable[[Envelope], None]] = {
            MessageKind.INITIALIZED: self._handle_initialized,
            MessageKind.LOGGING: lambda env: self._call(self._logging_handler, env.payload.get("details")),
            MessageKind.DISCONNECTED: lambda env: self._notify_disconnect(env.payload.get("details")),
            MessageKind.MESSAGE: lambda env: self._call(self._message_handler, env.payload),
            MessageKind.EXECUTE_SUCCESS: self._handle_execute_success,
            MessageKind.EXECUTE_FAILURE: self._handle_execute_failure,
        }

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, state={self._state.value!r})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def target_name(self) -> str:
        return f"{self.worker.comm_prefix}{self.client_id}"

    def on_init(self, handler: Callable[[], None]) -> None:
        self._init_handler = handler

    def on_failed(self, handler: Callable[[Exception], None]) -> None:
        self._fail_handler = handler

    def on_disconnect(self, handler: Callable[[Any], None]) -> None:
        self._disconnect_handler = handler

    def on_logging(self, handler: Callable[[Any], None]) -> None:
        self._logging_handler = handler

    def on_message(self, handler: Callable[[Any], None]) -> None:
        self._message_handler = handler

    async def connect(self) -> None:
        """
        Install and start the worker, then bind its comm.

        Returns once the comm is bound (AwaitingHandshake); use ``wait_ready`` for the
        handshake itself.

        Raises:
            ConnectionSetupError: if any setup step failed; the failure handler has
                already been called and the connection is Failed.
        """
        try:
            self._show_status("Setting up worker...")
            await self.session.execute(f"!pip install -U {self.worker.package}", on_output=self._on_setup_output)
            logger.info(f"Recovering worker client {self.client_id} on kernel {self.session.id}")
            await self.session.execute(RECOVER_CLIENT_CODE.format(client_id=self.client_id))

            opened = asyncio.get_running_loop().create_future()

            def on_comm_open(channel: ChannelProtocol, msg: dict) -> None:
                if opened.done():
                    logger.warning(f"Ignoring extra comm for {self.target_name}")
                    return
                self._bind(channel)
                self._apply(ConnectionEvent.SETUP_COMPLETE)
                opened.set_result(channel)

            self.session.register_comm_target(self.target_name, on_comm_open)
            logger.info(f"Starting worker for plugin {self.id}")
            await self.session.execute(
                START_WORKER_CODE.format(plugin_id=self.id, client_id=self.client_id),
                on_output=self._on_setup_output,
            )
            await opened
            self._show_status("Worker is ready.")
        except Exception as e:
            logger.error(f"Failed to set up the worker for plugin {self.id}: {e}")
            setup_error = ConnectionSetupError(f"Failed to initialize plugin {self.id} on the engine: {e}")
            self._apply(ConnectionEvent.SETUP_FAILED, error=setup_error)
            raise setup_error from e

    async def wait_ready(self) -> None:
        """Wait for the worker handshake. Raises the setup error if the connection failed first."""
        await self._settled.wait()
        if not self._initialized:
            raise self._error or ConnectionClosedError(f"Connection {self.id} closed before it was ready")

    async def send(self, data: Any) -> None:
        """
        Send an application message to the worker.

        While the comm is down the message is queued and sent once it is reopened.

        Raises:
            ConnectionClosedError: if the connection is disconnected or failed.
            ChannelLost: if the comm could not be reopened.
        """
        if self._state in TERMINAL_STATES:
            raise ConnectionClosedError(f"Connection {self.id} is {self._state.value}")
        msg = Envelope.wrap(data)
        if self._state == ConnectionState.READY and self._channel_usable():
            try:
                await self.channel.send(msg)
                return
            except ChannelLost as e:
                logger.info(f"Send on connection {self.id} failed, reconnecting: {e}")

        future = asyncio.get_running_loop().create_future()
        self._outbox.append((msg, future))
        if self._state == ConnectionState.READY or (
                self._state == ConnectionState.AWAITING_HANDSHAKE and not self._channel_usable()):
            self._apply(ConnectionEvent.CHANNEL_LOST)
        elif self._state == ConnectionState.RECONNECTING:
            self._ensure_reconnect()
        await future

    async def execute(self, code: Any) -> dict:
        """
        Ask the worker to execute ``code`` (source text or a script payload).

        Every call gets its own request id, so concurrent executions resolve independently.

        Raises:
            ExecutionFailure: if the worker answered with ``executeFailure``.
        """
        request_id = f"{self.id}-{next(self._request_ids)}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send({"type": "execute", "code": code, "id": request_id})
        except Exception:
            self._pending.pop(request_id, None)
            raise
        return await future

    async def disconnect(self, details: Any = None) -> None:
        """Tear the connection down; safe to call more than once."""
        result = self._apply(ConnectionEvent.DISCONNECT, details=details)
        if result.effects:
            logger.info(f"Connection {self.id} disconnected")
        if self._teardown_task is not None:
            await self._teardown_task

    def handle_data(self, data: Any) -> None:
        """Route one inbound comm message."""
        envelope = Envelope.from_wire(data)
        self._dispatch[envelope.kind](envelope)

    def _handle_initialized(self, envelope: Envelope) -> None:
        self.dedicated_thread = envelope.payload.get("dedicatedThread", True)
        self._apply(ConnectionEvent.INITIALIZED)

    def _take_pending(self, request_id: Any) -> Optional[asyncio.Future]:
        if request_id is not None and request_id in self._pending:
            return self._pending.pop(request_id)
        if self._pending:
            # replies without an id answer the oldest request
            return self._pending.popitem(last=False)[1]
        logger.warning(f"Execution result without a pending request on connection {self.id}")
        return None

    def _handle_execute_success(self, envelope: Envelope) -> None:
        future = self._take_pending(envelope.request_id)
        if future is not None and not future.done():
            future.set_result(envelope.payload)

    def _handle_execute_failure(self, envelope: Envelope) -> None:
        future = self._take_pending(envelope.request_id)
        if future is not None and not future.done():
            error = envelope.payload.get("error")
            future.set_exception(ExecutionFailure(f"Execution failed in plugin {self.id}: {error}", evalue=str(error)))

    def _bind(self, channel: ChannelProtocol) -> None:
        self.channel = channel
        channel.on_msg(lambda data: self._on_channel_msg(channel, data))
        channel.on_close(lambda msg: self._on_channel_close(channel, msg))

    def _on_channel_msg(self, channel: ChannelProtocol, data: Any) -> None:
        if channel is not self.channel:
            return
        try:
            self.handle_data(data)
        except Exception as e:
            logger.error(f"Failed to handle message on connection {self.id}: {e}")

    def _on_channel_close(self, channel: ChannelProtocol, msg: Any) -> None:
        if channel is not self.channel:
            return
        logger.info(f"Comm {self.target_name} closed, reconnecting")
        self._apply(ConnectionEvent.CHANNEL_LOST)

    def _channel_usable(self) -> bool:
        return (self.session.status != KernelStatus.DEAD
                and self.channel is not None and not self.channel.is_disposed)

    def _apply(self, event: ConnectionEvent, error: Optional[Exception] = None, details: Any = None) -> Transition:
        result = transition(self._state, event)
        if result.state != self._state:
            logger.debug(f"Connection {self.id}: {self._state.value} -> {result.state.value} ({event.value})")
        self._state = result.state
        if error is not None:
            self._error = error
        for effect in result.effects:
            if effect == Effect.NOTIFY_INIT:
                self._initialized = True
                self._settled.set()
                self._call(self._init_handler)
            elif effect == Effect.NOTIFY_FAILED:
                self._settled.set()
                self._call(self._fail_handler, error)
            elif effect == Effect.NOTIFY_DISCONNECT:
                self._settled.set()
                self._notify_disconnect(details)
            elif effect == Effect.REOPEN_CHANNEL:
                self._ensure_reconnect()
            elif effect == Effect.FLUSH_OUTBOX:
                self._flush_task = asyncio.ensure_future(self._flush_outbox())
            elif effect == Effect.TEARDOWN_SESSION:
                self._teardown_task = asyncio.ensure_future(self._teardown())
            elif effect == Effect.REJECT_PENDING:
                self._reject_all(error or ConnectionClosedError(f"Connection {self.id} closed"))
        return result

    def _ensure_reconnect(self) -> asyncio.Task:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect())
        return self._reconnect_task

    async def _reconnect(self) -> None:
        last_error: Optional[Exception] = None
        for delay in self.reconnect_policy.delays():
            if delay:
                await asyncio.sleep(delay)
            if self._state != ConnectionState.RECONNECTING:
                return
            try:
                logger.info(f"Reconnecting kernel {self.session.id} for plugin {self.id}")
                await self.session.reconnect()
                channel = await self.session.connect_to_comm(self.target_name)
            except Exception as e:
                last_error = e
                logger.warning(f"Failed to reconnect kernel {self.session.id}: {e}")
                continue
            if self._state != ConnectionState.RECONNECTING:
                await channel.close()
                return
            self._bind(channel)
            self._apply(ConnectionEvent.RECONNECTED)
            logger.info(f"Comm {self.target_name} reconnected")
            return
        self._apply(ConnectionEvent.RECONNECT_FAILED)
        self._reject_outbox(ChannelLost(f"Could not reconnect plugin {self.id}: {last_error}"))

    async def _flush_outbox(self) -> None:
        while self._outbox and self._state == ConnectionState.READY:
            msg, future = self._outbox.pop(0)
            if future.done():
                continue
            try:
                await self.channel.send(msg)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(None)

    async def _teardown(self) -> None:
        logger.info(f"Shutting down kernel {self.session.id} of plugin {self.id}")
        try:
            if self.session_killer is not None:
                await self.session_killer(self.session)
            else:
                await self.session.shutdown()
        except Exception as e:
            logger.warning(f"Failed to shut down kernel {self.session.id}: {e}")

    def _reject_outbox(self, error: Exception) -> None:
        outbox, self._outbox = self._outbox, []
        for _, future in outbox:
            if not future.done():
                future.set_exception(error)

    def _reject_all(self, error: Exception) -> None:
        self._reject_outbox(error)
        pending, self._pending = self._pending, OrderedDict()
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _notify_disconnect(self, details: Any = None) -> None:
        if self._disconnect_notified:
            return
        self._disconnect_notified = True
        self._call(self._disconnect_handler, details)

    def _call(self, handler: Optional[Callable], *args) -> None:
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.error(f"Handler failed on connection {self.id}: {e}")

    def _on_setup_output(self, msg: dict) -> None:
        content = msg.get("content") or {}
        if msg.get("msg_type", (msg.get("header") or {}).get("msg_type")) == "stream" \
                and content.get("name") == "stdout":
            self._show_status(normalize_stream_text(content.get("text", "")))

    def _show_status(self, message: str) -> None:
        if self.status is not None:
            self.status.show_status(message)
