import pytest

from jupyter_engine.shared.errors import ExecutionFailure, PluginNotFoundError
from jupyter_engine.use_cases.execute_plugin import ExecutePlugin


class TestExecutePlugin:
    @pytest.mark.asyncio
    async def test_execute_on_running_plugin(self, start_plugin, plugin, connections):
        connection = await start_plugin.execute(plugin)

        result = await ExecutePlugin(connections).execute("p1", "print(42)")

        assert result["type"] == "executeSuccess"
        request = connection.channel.sent[-1]["data"]
        assert request["code"] == "print(42)"
        assert result["id"] == request["id"]

    @pytest.mark.asyncio
    async def test_execution_failure(self, start_plugin, plugin, connections, monkeypatch):
        await start_plugin.execute(plugin)
        monkeypatch.setattr(connections["p1"].channel, "fail_on", "raise")

        with pytest.raises(ExecutionFailure):
            await ExecutePlugin(connections).execute("p1", "raise ValueError()")

    @pytest.mark.asyncio
    async def test_unknown_plugin(self):
        with pytest.raises(PluginNotFoundError):
            await ExecutePlugin({}).execute("missing", "1 + 1")
