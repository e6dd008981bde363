import logging
import logging.handlers
from typing import Optional

from .config import LogSettings

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: LogSettings) -> logging.Logger:
    """Install stream (and optionally syslog) handlers on the package logger."""
    logger = logging.getLogger("shard_ingestor")
    logger.setLevel(settings.level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(stream)

    syslog = _syslog_handler(settings)
    if syslog is not None:
        logger.addHandler(syslog)
    return logger


def _syslog_handler(settings: LogSettings) -> Optional[logging.Handler]:
    if not settings.syslog:
        return None
    try:
        handler = logging.handlers.SysLogHandler(
            address=settings.syslog_address,
            facility=logging.handlers.SysLogHandler.LOG_DAEMON,
        )
    except OSError as exc:
        logging.getLogger(__name__).warning(
            "Syslog unavailable at %s, logging to stream only: %s",
            settings.syslog_address,
            exc,
        )
        return None
    handler.setFormatter(logging.Formatter(f"{settings.tag}: %(levelname)s %(name)s %(message)s"))
    return handler
