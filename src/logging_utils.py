"""
Logging for the relay.

Every module logs under the "synthrelay" hierarchy so one call to
set_verbose() switches the whole server between INFO and DEBUG. Uvicorn
keeps its own loggers; only ours are configured here.

Connection-scoped messages go through SessionLogger, which tags each line
with the session id and client address:

    log = SessionLogger(get_logger(__name__), session_id="3f9a", client_id="203.0.113.7")
    log.info("Client connected")
    # ... synthrelay.server: [3f9a 203.0.113.7] Client connected
"""

import logging
import sys
from typing import Optional, TextIO

ROOT_LOGGER_NAME = "synthrelay"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handler: Optional[logging.Handler] = None


def configure_logging(
    level: int = logging.INFO,
    fmt: str = LOG_FORMAT,
    datefmt: str = LOG_DATE_FORMAT,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Attach a stream handler to the synthrelay logger.

    Only the first call has an effect, and get_logger() already makes it
    with the defaults. Use set_verbose() to change the level afterwards.
    """
    global _handler
    if _handler is not None:
        return

    _handler = logging.StreamHandler(stream or sys.stderr)
    _handler.setFormatter(logging.Formatter(fmt, datefmt))

    relay_logger = logging.getLogger(ROOT_LOGGER_NAME)
    relay_logger.addHandler(_handler)
    relay_logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, under the synthrelay hierarchy."""
    configure_logging()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_verbose(verbose: bool) -> None:
    """DEBUG for every synthrelay logger when verbose, INFO otherwise."""
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(logging.DEBUG if verbose else logging.INFO)


class SessionLogger(logging.LoggerAdapter):
    """
    Prefix every record with the connection it belongs to.

    The session id and client address are also attached to the record as
    extra attributes, so a custom formatter can use them directly.
    """

    def __init__(self, logger: logging.Logger, session_id: str, client_id: Optional[str]):
        super().__init__(logger, {"session_id": session_id, "client_id": client_id or "-"})

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", {}).update(self.extra)
        return f"[{self.extra['session_id']} {self.extra['client_id']}] {msg}", kwargs
