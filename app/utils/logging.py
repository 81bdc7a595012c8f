# =============================================
# File: app/utils/logging.py
# Purpose: Logging configuration (loguru file sink for component diagnostics)
# =============================================
import os

from loguru import logger

_configured = False


def configure_logging() -> None:
    """Add a rotating file sink when LOG_FILE is set. Idempotent."""
    global _configured
    if _configured:
        return
    path = os.getenv("LOG_FILE", "").strip()
    if path:
        logger.add(path, rotation="10 MB", level=os.getenv("LOG_LEVEL", "INFO").upper())
    _configured = True
