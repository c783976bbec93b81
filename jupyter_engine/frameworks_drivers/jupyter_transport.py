"""
KernelTransport over the Jupyter server API.

REST calls (kernel specs, kernel lookup/start/shutdown) go through httpx; the kernel
channels are one websocket per session carrying the JSON-encoded Jupyter messages.
Comms opened on that socket are exposed as logical channels.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
import websockets

from jupyter_engine.entities.kernel_entry import KernelStatus
from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.shared.errors import (
    ChannelLost,
    EngineError,
    ExecutionFailure,
    KernelNotFoundError,
    LivenessFailure,
)
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import KernelModelDTO, KernelSpecsDTO, OutputCallback

logger = Logger.get(__name__)

PROTOCOL_VERSION = "5.3"
OUTPUT_MSG_TYPES = {"stream", "display_data", "execute_result", "error", "update_display_data"}


class CommChannel:
    """A comm opened on a kernel session, used as the plugin's logical channel."""

    def __init__(self, session: JupyterKernelSession, comm_id: str, target_name: str):
        self.session = session
        self.comm_id = comm_id
        self.target_name = target_name
        self._disposed = False
        self._msg_handler: Optional[Callable[[Any], None]] = None
        self._close_handler: Optional[Callable[[Any], None]] = None

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def on_msg(self, handler: Callable[[Any], None]) -> None:
        self._msg_handler = handler

    def on_close(self, handler: Callable[[Any], None]) -> None:
        self._close_handler = handler

    async def send(self, data: Any) -> None:
        if self._disposed:
            raise ChannelLost(f"Comm {self.comm_id} ({self.target_name}) is closed")
        await self.session.send_shell("comm_msg", {"comm_id": self.comm_id, "data": data})

    async def close(self) -> None:
        """Close the comm from this side; the close handler is not invoked."""
        if self._disposed:
            return
        self._disposed = True
        try:
            await self.session.send_shell("comm_close", {"comm_id": self.comm_id, "data": {}})
        except Exception as e:
            logger.debug(f"Could not notify kernel about closing comm {self.comm_id}: {e}")

    def deliver(self, data: Any) -> None:
        if self._msg_handler is not None and not self._disposed:
            self._msg_handler(data)

    def dispose(self, msg: Any = None, notify: bool = True) -> None:
        if self._disposed:
            return
        self._disposed = True
        if notify and self._close_handler is not None:
            self._close_handler(msg)


@dataclass
class _PendingExecution:
    future: asyncio.Future
    on_output: Optional[OutputCallback] = None
    reply: Optional[dict] = None
    idle: bool = False
    outputs: list[dict] = field(default_factory=list)


class JupyterKernelSession:
    """Live handle on one kernel of a Jupyter server."""

    def __init__(self, model: KernelModelDTO, settings: ServerSettings, transport: JupyterKernelTransport):
        self.id: str = model["id"]
        self.name: str = model.get("name", "")
        self.settings = settings
        self.transport = transport
        self.status = _parse_status(model.get("execution_state")) or KernelStatus.STARTING
        self.plugin_id: Optional[str] = None
        self.plugin_name: Optional[str] = None
        self.session_id = uuid.uuid4().hex
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._socket_lock = asyncio.Lock()
        self._executions: dict[str, _PendingExecution] = {}
        self._comm_targets: dict[str, Callable[[CommChannel, dict], None]] = {}
        self._comms: dict[str, CommChannel] = {}
        self._close_handlers: list[Callable[[], Any]] = []
        self._closed = False
        self._disposed = False
        self._dispose_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"JupyterKernelSession(id={self.id!r}, status={self.status.value!r})"

    @property
    def channels_url(self) -> str:
        url = f"{self.settings.ws_url}api/kernels/{self.id}/channels?session_id={self.session_id}"
        if self.settings.token:
            url += f"&token={quote(self.settings.token, safe='')}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        async with self._socket_lock:
            if self._ws is not None:
                return
            ws = await self.transport.ws_connect(self.channels_url)
            self._ws = ws
            self._disposed = False
            self._reader = asyncio.create_task(self._read_loop(ws))
            logger.debug(f"Kernel {self.id} channels connected")

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    self.handle_message(json.loads(raw))
                except json.JSONDecodeError:
                    logger.warning(f"Dropping non-JSON message from kernel {self.id}")
        except websockets.ConnectionClosed as e:
            logger.info(f"Kernel {self.id} channels closed: {e}")
        except Exception as e:
            logger.error(f"Error reading from kernel {self.id}: {e}")
        finally:
            if ws is self._ws:
                self._socket_lost()

    def _socket_lost(self) -> None:
        self._ws = None
        for pending in self._executions.values():
            if not pending.future.done():
                pending.future.set_exception(ChannelLost(f"Connection to kernel {self.id} lost"))
        self._executions.clear()
        comms, self._comms = self._comms, {}
        for comm in comms.values():
            comm.dispose(None)

    def build_message(self, msg_type: str, content: dict, channel: str = "shell") -> dict:
        return {
            "header": {
                "msg_id": uuid.uuid4().hex,
                "msg_type": msg_type,
                "session": self.session_id,
                "username": "jupyter-engine",
                "version": PROTOCOL_VERSION,
                "date": datetime.now(timezone.utc).isoformat(),
            },
            "parent_header": {},
            "metadata": {},
            "content": content,
            "channel": channel,
            "buffers": [],
        }

    async def _send(self, msg: dict) -> None:
        if self._ws is None:
            await self.connect()
        try:
            await self._ws.send(json.dumps(msg))
        except websockets.ConnectionClosed as e:
            raise ChannelLost(f"Connection to kernel {self.id} lost: {e}") from e

    async def send_shell(self, msg_type: str, content: dict) -> str:
        msg = self.build_message(msg_type, content)
        await self._send(msg)
        return msg["header"]["msg_id"]

    async def execute(self, code: str, on_output: Optional[OutputCallback] = None) -> dict:
        """
        Run code in the kernel and wait until it is done.

        Args:
            code: Source to execute.
            on_output: Called with every iopub output message of this request.

        Returns:
            The content of the execute_reply.

        Raises:
            ExecutionFailure: if the kernel reported an error.
            ChannelLost: if the socket dropped before the request completed.
        """
        msg = self.build_message("execute_request", {
            "code": code,
            "silent": False,
            "store_history": False,
            "user_expressions": {},
            "allow_stdin": False,
            "stop_on_error": True,
        })
        msg_id = msg["header"]["msg_id"]
        pending = _PendingExecution(asyncio.get_running_loop().create_future(), on_output)
        self._executions[msg_id] = pending
        try:
            await self._send(msg)
        except Exception:
            self._executions.pop(msg_id, None)
            raise
        return await pending.future

    def register_comm_target(self, target_name: str, callback: Callable[[CommChannel, dict], None]) -> None:
        self._comm_targets[target_name] = callback

    async def connect_to_comm(self, target_name: str) -> CommChannel:
        comm = CommChannel(self, uuid.uuid4().hex, target_name)
        self._comms[comm.comm_id] = comm
        await self.send_shell("comm_open", {"comm_id": comm.comm_id, "target_name": target_name, "data": {}})
        return comm

    def handle_message(self, msg: dict) -> None:
        header = msg.get("header") or {}
        msg_type = header.get("msg_type") or msg.get("msg_type")
        parent_id = (msg.get("parent_header") or {}).get("msg_id")
        content = msg.get("content") or {}
        pending = self._executions.get(parent_id) if parent_id else None

        if msg_type == "status":
            self._set_status(content.get("execution_state"))
            if pending is not None and content.get("execution_state") == "idle":
                pending.idle = True
                self._maybe_finish(parent_id)
        elif msg_type == "execute_reply":
            if pending is not None:
                pending.reply = content
                self._maybe_finish(parent_id)
        elif msg_type in OUTPUT_MSG_TYPES:
            if pending is not None:
                pending.outputs.append(msg)
                if pending.on_output is not None:
                    try:
                        pending.on_output(msg)
                    except Exception as e:
                        logger.error(f"Output callback failed for kernel {self.id}: {e}")
        elif msg_type == "comm_open":
            self._open_comm(content, msg)
        elif msg_type == "comm_msg":
            comm = self._comms.get(content.get("comm_id"))
            if comm is not None:
                comm.deliver(content.get("data"))
        elif msg_type == "comm_close":
            comm = self._comms.pop(content.get("comm_id"), None)
            if comm is not None:
                comm.dispose(msg)

    def _open_comm(self, content: dict, msg: dict) -> None:
        target_name = content.get("target_name")
        callback = self._comm_targets.get(target_name)
        if callback is None:
            logger.warning(f"No comm target registered for {target_name} on kernel {self.id}")
            return
        comm = CommChannel(self, content["comm_id"], target_name)
        self._comms[comm.comm_id] = comm
        callback(comm, msg)

    def _maybe_finish(self, msg_id: str) -> None:
        pending = self._executions[msg_id]
        if pending.reply is None or not pending.idle:
            return
        del self._executions[msg_id]
        if pending.future.done():
            return
        reply = pending.reply
        if reply.get("status") == "ok":
            pending.future.set_result(reply)
            return
        ename = reply.get("ename", reply.get("status", "error"))
        evalue = reply.get("evalue", "")
        pending.future.set_exception(ExecutionFailure(
            f"Execution failed on kernel {self.id}: {ename}: {evalue}",
            ename=ename, evalue=evalue, traceback=reply.get("traceback"),
        ))

    def _set_status(self, state: Optional[str]) -> None:
        status = _parse_status(state)
        if status is None:
            return
        self.status = status
        if status == KernelStatus.DEAD:
            logger.warning(f"Kernel {self.id} died")
            self._run_close_handlers()
            self._dispose_task = asyncio.ensure_future(self.dispose())
            self._dispose_task.add_done_callback(self._log_dispose_failure)

    def _log_dispose_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Failed to close the channels of dead kernel {self.id}: {task.exception()}")

    def on_close(self, handler: Callable[[], Any]) -> None:
        self._close_handlers.append(handler)

    def _run_close_handlers(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handler in self._close_handlers:
            try:
                handler()
            except Exception as e:
                logger.error(f"Close handler failed for kernel {self.id}: {e}")

    async def reconnect(self) -> None:
        """Re-resolve the kernel on its server and reopen the channels socket."""
        await self.transport.find_by_id(self.id, self.settings)
        old, self._ws = self._ws, None
        if old is not None:
            await old.close()
        await self.connect()
        logger.info(f"Kernel {self.id} reconnected")

    async def dispose(self) -> None:
        """Close this handle locally; the remote kernel keeps running."""
        if self._disposed:
            return
        self._disposed = True
        ws, self._ws = self._ws, None
        comms, self._comms = self._comms, {}
        for comm in comms.values():
            comm.dispose(notify=False)
        for pending in self._executions.values():
            if not pending.future.done():
                pending.future.set_exception(ChannelLost(f"Kernel handle {self.id} disposed"))
        self._executions.clear()
        if ws is not None:
            await ws.close()

    async def shutdown(self) -> None:
        """Shut the remote kernel down and close this handle."""
        try:
            await self.transport.delete_kernel(self.id, self.settings)
        finally:
            self.status = KernelStatus.DEAD
            self._run_close_handlers()
            await self.dispose()


def _parse_status(state: Optional[str]) -> Optional[KernelStatus]:
    if state is None:
        return None
    try:
        return KernelStatus(state)
    except ValueError:
        # restarting, autorestarting, connected, ...
        return KernelStatus.STARTING


class JupyterKernelTransport:
    """
    Capability giving access to the kernels of Jupyter servers.

    Args:
        timeout: Timeout of every REST request in seconds.
        http_transport: Optional httpx transport (tests inject an httpx.MockTransport).
        ws_connect: Coroutine function opening a websocket for a URL.
    """

    def __init__(self, timeout: float = 30.0, http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 ws_connect: Optional[Callable[[str], Any]] = None):
        self.timeout = timeout
        self.http_transport = http_transport
        self._ws_connect = ws_connect or websockets.connect

    async def ws_connect(self, url: str):
        return await self._ws_connect(url)

    def _client(self, settings: ServerSettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=settings.headers, transport=self.http_transport)

    async def get_specs(self, settings: ServerSettings) -> KernelSpecsDTO:
        url = settings.api_url("api/kernelspecs")
        async with self._client(settings) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise LivenessFailure(f"Server {settings.base_url} did not list its kernel specs: {e}") from e

    async def find_by_id(self, kernel_id: str, settings: ServerSettings) -> KernelModelDTO:
        url = settings.api_url(f"api/kernels/{kernel_id}")
        async with self._client(settings) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                raise LivenessFailure(f"Could not reach {settings.base_url}: {e}") from e
            if response.status_code == 404:
                raise KernelNotFoundError(f"Kernel {kernel_id} not found on {settings.base_url}")
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise LivenessFailure(f"Kernel lookup failed on {settings.base_url}: {e}") from e
            return response.json()

    async def start_new(self, name: str, settings: ServerSettings) -> JupyterKernelSession:
        url = settings.api_url("api/kernels")
        async with self._client(settings) as client:
            try:
                response = await client.post(url, json={"name": name})
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise EngineError(f"Failed to start a {name} kernel on {settings.base_url}: {e}") from e
            model = response.json()
        return await self.connect_to(model, settings)

    async def connect_to(self, model: KernelModelDTO, settings: ServerSettings) -> JupyterKernelSession:
        session = JupyterKernelSession(model, settings, self)
        await session.connect()
        return session

    async def delete_kernel(self, kernel_id: str, settings: ServerSettings) -> None:
        url = settings.api_url(f"api/kernels/{kernel_id}")
        async with self._client(settings) as client:
            response = await client.delete(url)
            if response.status_code != 404:
                response.raise_for_status()
