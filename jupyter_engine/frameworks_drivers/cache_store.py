import json
from pathlib import Path
from typing import Optional

from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


class JsonCacheStore:
    """
    Durable key -> record map persisted as one JSON document.

    The registry and the pool each own one store; they call ``load()`` once at startup
    and ``save()`` after every completed in-memory mutation.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                records = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable cache {self.path}: {e}")
            return {}
        if not isinstance(records, dict):
            logger.warning(f"Ignoring malformed cache {self.path}")
            return {}
        logger.info(f"Loaded {len(records)} cached entries from {self.path}")
        return records

    def save(self, records: dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(records, f, indent=2)
        tmp_path.replace(self.path)


class MemoryCacheStore:
    """Store keeping the snapshot in memory, used when no cache directory is configured."""

    def __init__(self, records: Optional[dict[str, dict]] = None):
        self.records: dict[str, dict] = dict(records or {})
        self.save_count = 0

    def load(self) -> dict[str, dict]:
        return {key: dict(value) for key, value in self.records.items()}

    def save(self, records: dict[str, dict]) -> None:
        self.records = {key: dict(value) for key, value in records.items()}
        self.save_count += 1


def create_cache_stores(cache_dir: Optional[str]) -> tuple[JsonCacheStore | MemoryCacheStore,
                                                           JsonCacheStore | MemoryCacheStore]:
    """Return the (servers, kernels) stores for the configured cache directory."""
    if cache_dir is None:
        return MemoryCacheStore(), MemoryCacheStore()
    root = Path(cache_dir).expanduser()
    return JsonCacheStore(root / "jupyter_servers.json"), JsonCacheStore(root / "jupyter_kernels.json")
