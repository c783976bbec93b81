import logging
import os


class Logger:
    """Utility class for standardized logging configuration."""

    LEVEL_ENV = "JUPYTER_ENGINE_LOG_LEVEL"

    @staticmethod
    def get(name: str) -> logging.Logger:
        """
        Get a standardized logger for the engine.
        Configures logging with basic setup if not already configured; the root level
        can be overridden with the JUPYTER_ENGINE_LOG_LEVEL environment variable.
        """
        if not logging.getLogger().hasHandlers():
            level = os.environ.get(Logger.LEVEL_ENV, "INFO").upper()
            logging.basicConfig(
                level=getattr(logging, level, logging.INFO),
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            )
        return logging.getLogger(name)
