import pytest

from jupyter_engine.entities.connection_state import ConnectionState
from jupyter_engine.shared.errors import KernelNotFoundError, PluginNotFoundError
from jupyter_engine.use_cases.kill_plugin import KillPlugin


class TestKillPlugin:
    """Test cases for stopping plugins and their kernels."""

    @pytest.mark.asyncio
    async def test_kill_running_plugin(self, start_plugin, plugin, pool, connections, worker_transport):
        connection = await start_plugin.execute(plugin)

        killed = await KillPlugin(pool, connections).execute("p1")

        assert killed == [connection.session.id]
        assert connection.state == ConnectionState.DISCONNECTED
        assert connections == {}
        assert pool.kernels == {}
        assert worker_transport.sessions[0].shutdown_count == 1

    @pytest.mark.asyncio
    async def test_kill_plugin_without_connection(self, pool, connections, settings):
        session = await pool.start("Demo", settings)
        session.plugin_id = "p1"

        killed = await KillPlugin(pool, connections).execute("p1")

        assert killed == [session.id]
        assert session.shutdown_count == 1
        assert pool.kernels == {}

    @pytest.mark.asyncio
    async def test_kill_unknown_plugin(self, pool, connections):
        with pytest.raises(PluginNotFoundError):
            await KillPlugin(pool, connections).execute("missing")

    @pytest.mark.asyncio
    async def test_kill_process_of_connected_plugin(self, start_plugin, plugin, pool, connections):
        connection = await start_plugin.execute(plugin)

        await KillPlugin(pool, connections).kill_process(connection.session.id)

        assert connections == {}
        assert connection.state == ConnectionState.DISCONNECTED
        assert pool.kernels == {}

    @pytest.mark.asyncio
    async def test_kill_process_of_idle_kernel(self, pool, connections, settings):
        session = await pool.start("Demo", settings)

        await KillPlugin(pool, connections).kill_process(session.id)

        assert session.shutdown_count == 1
        assert pool.kernels == {}

    @pytest.mark.asyncio
    async def test_kill_unknown_process(self, pool, connections):
        with pytest.raises(KernelNotFoundError):
            await KillPlugin(pool, connections).kill_process("kernel-404")
