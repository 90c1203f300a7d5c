import logging
import os
from datetime import datetime
from pathlib import Path

# Empty string disables the per-run log file (tests, embedded use).
LOG_DIR = os.getenv("CHATSTREAM_LOG_DIR", "logs")

_LOGGERS = {}
_FILE_HANDLERS = {}


def _file_handler(runtime: str, formatter: logging.Formatter):
    if not LOG_DIR:
        return None

    if runtime in _FILE_HANDLERS:
        return _FILE_HANDLERS[runtime]

    log_dir = Path(LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    logfile = log_dir / f"{runtime}-{timestamp}.log"

    handler = logging.FileHandler(logfile, encoding="utf-8")
    handler.setFormatter(formatter)
    _FILE_HANDLERS[runtime] = handler
    return handler


def get_logger(
    name: str,
    *,
    runtime: str = "chatstream",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. twitch.irc, twitch.eventsub)
    - runtime: log file prefix (chatstream | poc | future runtimes)

    All loggers of one runtime share a single per-run log file.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    file_handler = _file_handler(runtime, formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
