from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.shared.error_utils import ErrorUtils


class HealthController:
    def __init__(self, registry: ServerRegistry):
        self.registry = registry

    async def health(self):
        try:
            servers = {}
            for url, manager in list(self.registry.file_managers.items()):
                servers[url] = await manager.heartbeat()
            return {"status": "ok", "servers": servers}
        except Exception as e:
            return ErrorUtils.format_error_response(f"Health check failed: {str(e)}", "health_check_error")
