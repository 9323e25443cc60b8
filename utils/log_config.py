# utils/log_config.py
"""
Logging setup for the API process.

Modules log through ``logging.getLogger(__name__)``; this installs a single
stream handler on the root logger, level from LOG_LEVEL (default INFO).
"""
import logging
import os

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] - %(message)s"

_configured = False


def configure_logging(level: str = None) -> None:
     """Install the root handler once; later calls only adjust the level."""
     global _configured
     level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
     root = logging.getLogger()
     root.setLevel(getattr(logging, level_name, logging.INFO))
     if _configured:
          return

     handler = logging.StreamHandler()
     handler.setFormatter(logging.Formatter(LOG_FORMAT))
     root.addHandler(handler)

     # Quiet noisy libraries
     logging.getLogger("urllib3").setLevel(logging.WARNING)
     logging.getLogger("stripe").setLevel(logging.WARNING)
     _configured = True
