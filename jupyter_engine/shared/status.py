from collections import deque
from typing import Optional

from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


class LoggingStatusSink:
    """
    Status sink that narrates engine progress through the logger.

    Keeps the latest status line and a bounded history so that the engine status
    endpoint can report what the engine is currently doing.
    """

    def __init__(self, history_size: int = 50):
        self.current: Optional[str] = None
        self.history: deque[str] = deque(maxlen=history_size)

    def log(self, message: str) -> None:
        logger.info(message)
        self.history.append(message)

    def show_status(self, message: str) -> None:
        logger.debug(f"status: {message}")
        self.current = message
