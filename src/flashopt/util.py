"""Logging setup and small clock/number helpers."""

import logging
from time import monotonic, time
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("websockets", "aiohttp.access")


def setup_logging(
    name: str = "flashopt",
    level: str = "INFO",
    format_str: Optional[str] = None,
) -> logging.Logger:
    """
    Configure process-wide logging once at startup.

    Library loggers listed in _NOISY_LOGGERS are held at WARNING unless
    DEBUG is requested.

    Returns:
        The logger for `name`
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        format=format_str or LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(
            logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
        )

    return logging.getLogger(name)


def now_s() -> float:
    """Current monotonic instant in seconds."""
    return monotonic()


def wall_ms() -> int:
    """Get current wall clock timestamp in milliseconds."""
    return int(time() * 1000)


def clamp(value: float, low: float, high: float) -> float:
    """Bound value to [low, high]; NaN maps to low."""
    if not value >= low:
        return low
    return high if value > high else value
