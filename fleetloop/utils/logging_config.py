import logging
import sys
import os
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers held at WARNING regardless of the loop's level
_QUIET_LOGGERS = ("docker", "urllib3", "httpx", "httpcore")


class ColoredFormatter(logging.Formatter):
    """Colours the whole console line by level."""

    COLORS = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno)
        fmt = f"{color}{LOG_FORMAT}{self.RESET}" if color else LOG_FORMAT
        return logging.Formatter(fmt, datefmt=DATE_FORMAT).format(record)


def _daily_file_handler(log_dir: str) -> logging.Handler:
    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, f"fleetloop_{datetime.now().strftime('%Y%m%d')}.log")
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(level=logging.INFO, log_dir: str = "logs"):
    """Console on stderr plus an optional daily file under ``log_dir``."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    # stdout stays free for CLI tables and JSON
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        root_logger.addHandler(_daily_file_handler(log_dir))

    for name in ("fleetloop", "uvicorn", "uvicorn.error", "uvicorn.access", "main"):
        named = logging.getLogger(name)
        named.setLevel(level)
        named.propagate = True
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.info("Logging initialized (console%s).", " + file" if log_dir else "")
