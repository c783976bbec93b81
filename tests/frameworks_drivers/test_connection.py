import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from jupyter_engine.entities.connection_state import ConnectionState
from jupyter_engine.entities.kernel_entry import KernelStatus
from jupyter_engine.frameworks_drivers.config import ReconnectPolicy, WorkerConfig
from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.shared.errors import (
    ChannelLost,
    ConnectionClosedError,
    ConnectionSetupError,
    ExecutionFailure,
)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


async def ready_connection(session, **kwargs) -> Connection:
    connection = Connection("plugin-1", session, **kwargs)
    await connection.connect()
    connection.channel.emit({"type": "initialized", "dedicatedThread": False})
    await connection.wait_ready()
    return connection


class TestConnectionSetup:
    """Test cases for the worker setup and handshake."""

    @pytest.mark.asyncio
    async def test_setup_sequence(self, fake_session):
        connection = Connection("plugin-1", fake_session)

        await connection.connect()

        assert fake_session.executed[0] == "!pip install -U imjoy"
        assert 'JupyterClient.recover_client("plugin-1")' in fake_session.executed[1]
        assert '.add_plugin("plugin-1", "plugin-1").start()' in fake_session.executed[2]
        assert list(fake_session.comm_targets) == ["imjoy_comm_plugin-1"]
        assert connection.state == ConnectionState.AWAITING_HANDSHAKE
        assert connection.channel is fake_session.channels[0]

    @pytest.mark.asyncio
    async def test_custom_worker_and_client_id(self, fake_session):
        connection = Connection("plugin-1", fake_session, WorkerConfig(package="my-worker", comm_prefix="comm_"),
                                client_id="client-7")

        await connection.connect()

        assert fake_session.executed[0] == "!pip install -U my-worker"
        assert '.add_plugin("plugin-1", "client-7")' in fake_session.executed[2]
        assert connection.target_name == "comm_client-7"

    @pytest.mark.asyncio
    async def test_handshake(self, fake_session):
        on_init = MagicMock()
        connection = Connection("plugin-1", fake_session)
        connection.on_init(on_init)
        await connection.connect()

        connection.channel.emit({"type": "initialized", "dedicatedThread": False})
        await connection.wait_ready()

        assert connection.state == ConnectionState.READY
        assert connection.dedicated_thread is False
        on_init.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_wrapped_handshake_defaults_to_dedicated_thread(self, fake_session):
        connection = Connection("plugin-1", fake_session)
        await connection.connect()

        connection.channel.emit({"type": "message", "data": {"type": "initialized"}})

        assert connection.state == ConnectionState.READY
        assert connection.dedicated_thread is True

    @pytest.mark.asyncio
    async def test_setup_failure(self, fake_session):
        fake_session.fail_on = "recover_client"
        on_failed = MagicMock()
        connection = Connection("plugin-1", fake_session)
        connection.on_failed(on_failed)

        with pytest.raises(ConnectionSetupError):
            await connection.connect()

        assert connection.state == ConnectionState.FAILED
        on_failed.assert_called_once()
        assert isinstance(on_failed.call_args.args[0], ConnectionSetupError)
        with pytest.raises(ConnectionSetupError):
            await connection.wait_ready()

    @pytest.mark.asyncio
    async def test_worker_start_failure(self, fake_session):
        fake_session.fail_on = "add_plugin"
        connection = Connection("plugin-1", fake_session)

        with pytest.raises(ConnectionSetupError):
            await connection.connect()

        assert connection.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_setup_output_goes_to_status(self, fake_session, status_sink):
        fake_session.outputs = [{"msg_type": "stream", "content": {"name": "stdout", "text": "Successfully installed"}}]
        connection = Connection("plugin-1", fake_session, status=status_sink)

        await connection.connect()

        assert status_sink.current == "Worker is ready."


class TestConnectionMessages:
    """Test cases for routing inbound messages."""

    @pytest.mark.asyncio
    async def test_routing(self, fake_session):
        connection = await ready_connection(fake_session)
        on_logging, on_message, on_disconnect = MagicMock(), MagicMock(), MagicMock()
        connection.on_logging(on_logging)
        connection.on_message(on_message)
        connection.on_disconnect(on_disconnect)

        connection.channel.emit({"type": "logging", "details": "log line"})
        connection.channel.emit({"type": "message", "data": {"type": "logging", "details": "wrapped"}})
        connection.channel.emit({"type": "message", "data": {"type": "method", "name": "run"}})
        connection.channel.emit({"type": "disconnected", "details": "bye"})

        assert [c.args[0] for c in on_logging.call_args_list] == ["log line", "wrapped"]
        on_message.assert_called_once_with({"type": "method", "name": "run"})
        on_disconnect.assert_called_once_with("bye")

    @pytest.mark.asyncio
    async def test_messages_before_handshake_reach_message_handler(self, fake_session):
        connection = Connection("plugin-1", fake_session)
        on_message = MagicMock()
        connection.on_message(on_message)
        await connection.connect()

        connection.channel.emit({"type": "message", "data": {"type": "hello"}})

        on_message.assert_called_once_with({"type": "hello"})
        assert connection.state == ConnectionState.AWAITING_HANDSHAKE

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_the_channel(self, fake_session):
        connection = await ready_connection(fake_session)
        connection.on_message(MagicMock(side_effect=RuntimeError("handler bug")))

        connection.channel.emit({"type": "message", "data": {"type": "x"}})

        assert connection.state == ConnectionState.READY


class TestConnectionExecute:
    """Test cases for request/response execution."""

    @pytest.mark.asyncio
    async def test_send_wraps_payload(self, fake_session):
        connection = await ready_connection(fake_session)

        await connection.send({"type": "getInterface"})

        assert connection.channel.sent == [{"type": "message", "data": {"type": "getInterface"}}]

    @pytest.mark.asyncio
    async def test_execute_success(self, fake_session):
        connection = await ready_connection(fake_session)

        task = asyncio.create_task(connection.execute("print(1)"))
        await settle()
        request = connection.channel.sent[0]["data"]
        connection.channel.emit({"type": "executeSuccess", "id": request["id"]})

        assert await task == {"type": "executeSuccess", "id": request["id"]}
        assert request["type"] == "execute"
        assert request["code"] == "print(1)"

    @pytest.mark.asyncio
    async def test_execute_failure(self, fake_session):
        connection = await ready_connection(fake_session)

        task = asyncio.create_task(connection.execute("1/0"))
        await settle()
        connection.channel.emit({"type": "executeFailure", "error": "ZeroDivisionError"})

        with pytest.raises(ExecutionFailure, match="ZeroDivisionError"):
            await task

    @pytest.mark.asyncio
    async def test_concurrent_executes_resolve_independently(self, fake_session):
        connection = await ready_connection(fake_session)

        first = asyncio.create_task(connection.execute("a"))
        second = asyncio.create_task(connection.execute("b"))
        await settle()
        first_id, second_id = [m["data"]["id"] for m in connection.channel.sent]
        connection.channel.emit({"type": "executeSuccess", "id": second_id, "result": "b"})
        connection.channel.emit({"type": "executeFailure", "id": first_id, "error": "a failed"})

        assert (await second)["result"] == "b"
        with pytest.raises(ExecutionFailure):
            await first

    @pytest.mark.asyncio
    async def test_untagged_results_resolve_oldest_request(self, fake_session):
        connection = await ready_connection(fake_session)

        first = asyncio.create_task(connection.execute("a"))
        second = asyncio.create_task(connection.execute("b"))
        await settle()
        connection.channel.emit({"type": "executeSuccess", "result": 1})

        assert (await first)["result"] == 1
        assert not second.done()
        connection.channel.emit({"type": "executeSuccess", "result": 2})
        assert (await second)["result"] == 2

    @pytest.mark.asyncio
    async def test_send_before_handshake_is_delivered_when_ready(self, fake_session):
        connection = Connection("plugin-1", fake_session)
        await connection.connect()

        task = asyncio.create_task(connection.send({"n": 1}))
        await settle()
        assert connection.channel.sent == []

        connection.channel.emit({"type": "initialized"})
        await task

        assert connection.channel.sent == [{"type": "message", "data": {"n": 1}}]


class TestConnectionReconnect:
    """Test cases for reopening a lost comm."""

    @pytest.mark.asyncio
    async def test_remote_close_triggers_one_reconnect_and_redelivers(self, fake_session):
        connection = await ready_connection(fake_session)
        old_channel = connection.channel

        old_channel.remote_close()
        assert connection.state == ConnectionState.RECONNECTING
        await connection.send({"n": 1})

        assert fake_session.reconnect_count == 1
        assert fake_session.comm_requests == ["imjoy_comm_plugin-1"]
        assert connection.state == ConnectionState.READY
        assert connection.channel is not old_channel
        assert connection.channel.sent == [{"type": "message", "data": {"n": 1}}]
        assert connection.id == "plugin-1"
        assert connection.client_id == "plugin-1"

    @pytest.mark.asyncio
    async def test_send_on_disposed_channel_reconnects(self, fake_session):
        connection = await ready_connection(fake_session)
        connection.channel._disposed = True

        await connection.send({"n": 2})

        assert fake_session.reconnect_count == 1
        assert connection.channel.sent == [{"type": "message", "data": {"n": 2}}]

    @pytest.mark.asyncio
    async def test_send_on_dead_kernel_reconnects(self, fake_session):
        connection = await ready_connection(fake_session)
        fake_session.status = KernelStatus.DEAD

        async def revive():
            fake_session.status = KernelStatus.IDLE

        fake_session.reconnect = AsyncMock(side_effect=revive)

        await connection.send({"n": 3})

        fake_session.reconnect.assert_awaited_once()
        assert connection.channel.sent == [{"type": "message", "data": {"n": 3}}]

    @pytest.mark.asyncio
    async def test_close_of_replaced_channel_is_ignored(self, fake_session):
        connection = await ready_connection(fake_session)
        old_channel = connection.channel
        old_channel.remote_close()
        await connection.send({"n": 1})

        old_channel.remote_close()

        assert connection.state == ConnectionState.READY
        assert fake_session.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_failed_reconnect_rejects_queued_sends(self, fake_session):
        connection = await ready_connection(fake_session)
        fake_session.reconnect_error = ChannelLost("kernel unreachable")
        connection.channel.remote_close()

        with pytest.raises(ChannelLost):
            await connection.send({"n": 1})

        assert connection.state == ConnectionState.RECONNECTING

    @pytest.mark.asyncio
    async def test_next_send_retries_after_failed_reconnect(self, fake_session):
        connection = await ready_connection(fake_session)
        fake_session.reconnect_error = ChannelLost("kernel unreachable")
        connection.channel.remote_close()
        with pytest.raises(ChannelLost):
            await connection.send({"n": 1})

        fake_session.reconnect_error = None
        await connection.send({"n": 2})

        assert fake_session.reconnect_count == 2
        assert connection.state == ConnectionState.READY
        assert connection.channel.sent == [{"type": "message", "data": {"n": 2}}]

    @pytest.mark.asyncio
    async def test_policy_retries_with_backoff(self, fake_session):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ChannelLost("not yet")

        fake_session.reconnect = AsyncMock(side_effect=flaky)
        policy = ReconnectPolicy(max_attempts=3, backoff=0.001)
        connection = await ready_connection(fake_session, reconnect_policy=policy)
        connection.channel.remote_close()

        await connection.send({"n": 1})

        assert len(attempts) == 3
        assert connection.state == ConnectionState.READY


class TestConnectionDisconnect:
    """Test cases for tearing a connection down."""

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, fake_session):
        on_disconnect = MagicMock()
        connection = await ready_connection(fake_session)
        connection.on_disconnect(on_disconnect)

        await connection.disconnect()
        await connection.disconnect()

        assert connection.state == ConnectionState.DISCONNECTED
        assert fake_session.shutdown_count == 1
        on_disconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_uses_session_killer(self, fake_session):
        killer = AsyncMock()
        connection = await ready_connection(fake_session, session_killer=killer)

        await connection.disconnect()

        killer.assert_awaited_once_with(fake_session)
        assert fake_session.shutdown_count == 0

    @pytest.mark.asyncio
    async def test_teardown_failure_is_not_raised(self, fake_session):
        killer = AsyncMock(side_effect=RuntimeError("server gone"))
        connection = await ready_connection(fake_session, session_killer=killer)

        await connection.disconnect()

        assert connection.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_rejects_pending_executes(self, fake_session):
        connection = await ready_connection(fake_session)
        task = asyncio.create_task(connection.execute("while True: pass"))
        await settle()

        await connection.disconnect()

        with pytest.raises(ConnectionClosedError):
            await task

    @pytest.mark.asyncio
    async def test_send_after_disconnect(self, fake_session):
        connection = await ready_connection(fake_session)
        await connection.disconnect()

        with pytest.raises(ConnectionClosedError):
            await connection.send({"n": 1})

    @pytest.mark.asyncio
    async def test_disconnect_after_failed_setup_notifies_once(self, fake_session):
        fake_session.fail_on = "pip install"
        on_disconnect = MagicMock()
        connection = Connection("plugin-1", fake_session)
        connection.on_disconnect(on_disconnect)
        with pytest.raises(ConnectionSetupError):
            await connection.connect()

        await connection.disconnect()
        await connection.disconnect()

        on_disconnect.assert_called_once()
        assert fake_session.shutdown_count == 1

    @pytest.mark.asyncio
    async def test_worker_disconnect_and_disconnect_notify_once(self, fake_session):
        on_disconnect = MagicMock()
        connection = await ready_connection(fake_session)
        connection.on_disconnect(on_disconnect)

        connection.channel.emit({"type": "disconnected", "details": "worker exit"})
        await connection.disconnect()

        on_disconnect.assert_called_once_with("worker exit")
