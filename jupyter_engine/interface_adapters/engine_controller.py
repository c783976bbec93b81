from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from jupyter_engine.entities.plugin import PluginConfig
from jupyter_engine.frameworks_drivers.config import JupyterServerConfig
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.shared.error_utils import ErrorUtils
from jupyter_engine.shared.errors import (
    EngineError,
    ExecutionFailure,
    KernelNotFoundError,
    OperationNotSupportedError,
    PluginNotFoundError,
)
from jupyter_engine.shared.logger import Logger
from jupyter_engine.use_cases.execute_plugin import ExecutePlugin
from jupyter_engine.use_cases.get_engine_status import GetEngineStatus
from jupyter_engine.use_cases.kill_plugin import KillPlugin
from jupyter_engine.use_cases.start_plugin import StartPlugin

logger = Logger.get(__name__)

_STATUS_CODES = {
    PluginNotFoundError: 404,
    KernelNotFoundError: 404,
    OperationNotSupportedError: 405,
    ExecutionFailure: 422,
}


def _error_response(exc: Exception) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)),
                       502 if isinstance(exc, EngineError) else 500)
    return JSONResponse(
        status_code=status_code,
        content=ErrorUtils.format_error_response(str(exc), ErrorUtils.error_type_for(exc)),
    )


class EngineController:
    def __init__(self, start_plugin: StartPlugin, execute_plugin: ExecutePlugin, kill_plugin: KillPlugin,
                 get_engine_status: GetEngineStatus, registry: ServerRegistry):
        self.start_plugin_use_case = start_plugin
        self.execute_plugin_use_case = execute_plugin
        self.kill_plugin_use_case = kill_plugin
        self.get_engine_status_use_case = get_engine_status
        self.registry = registry

    def engine_status(self) -> dict:
        return self.get_engine_status_use_case.execute()

    def servers(self) -> list[dict]:
        return [manager.describe() for manager in self.registry.file_managers.values()]

    async def list_files(self, url: str, root: str = ""):
        manager = self.registry.get_file_manager(url)
        if manager is None:
            raise HTTPException(status_code=404, detail=f"Unknown server: {url}")
        try:
            return await manager.list_files(root)
        except Exception as e:
            logger.error(f"Listing {root} on {url} failed: {e}")
            return _error_response(e)

    async def start_plugin(self, request: dict):
        plugin, engine = self._parse_start_request(request)
        try:
            connection = await self.start_plugin_use_case.execute(plugin, engine)
        except Exception as e:
            return _error_response(e)
        return {
            "plugin_id": plugin.id,
            "kernel_id": connection.session.id,
            "state": connection.state.value,
            "dedicated_thread": connection.dedicated_thread,
        }

    async def execute(self, plugin_id: str, request: dict):
        if not isinstance(request, dict) or "code" not in request:
            raise HTTPException(status_code=400, detail="Request must be a JSON object with a 'code' field")
        try:
            return await self.execute_plugin_use_case.execute(plugin_id, request["code"])
        except Exception as e:
            return _error_response(e)

    async def kill_plugin(self, plugin_id: str):
        try:
            killed = await self.kill_plugin_use_case.execute(plugin_id)
        except Exception as e:
            return _error_response(e)
        return {"plugin_id": plugin_id, "killed": killed}

    async def kill_process(self, pid: str):
        try:
            await self.kill_plugin_use_case.kill_process(pid)
        except Exception as e:
            return _error_response(e)
        return {"pid": pid, "killed": True}

    def _parse_start_request(self, request: dict) -> tuple[PluginConfig, JupyterServerConfig | None]:
        """Validate the start request; the plugin config is either the body or its ``plugin`` field."""
        if not isinstance(request, dict):
            raise HTTPException(status_code=400, detail="Request must be a JSON object")
        body: dict[str, Any] = request.get("plugin", request)
        try:
            plugin = PluginConfig(**body)
            engine = JupyterServerConfig(**request["engine"]) if isinstance(request.get("engine"), dict) else None
        except (ValidationError, TypeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid plugin config: {e}")
        return plugin, engine
