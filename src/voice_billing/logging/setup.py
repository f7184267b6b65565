from __future__ import annotations

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Install one stdout handler on the root logger.

    Safe to call more than once; existing root handlers are replaced.
    """
    root = logging.getLogger()
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stream_handler.setFormatter(formatter)

    root.setLevel(level.upper())
    root.addHandler(stream_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpx", "httpcore", "motor", "pymongo"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
