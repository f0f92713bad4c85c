# backend/pharmaflow/core/logging_setup.py
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # passlib logs a harmless warning for newer bcrypt builds
    logging.getLogger("passlib").setLevel(logging.ERROR)
    _configured = True
