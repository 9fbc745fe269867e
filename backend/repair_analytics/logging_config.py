from __future__ import annotations

import logging
import sys


def configure_logging(level: int = logging.INFO) -> None:
    """Configure basic structured logging for the analytics backend.

    One stdout handler with level, logger name and the snake_case event name
    each module logs. Deployments ship stdout to their central log system.
    """
    root = logging.getLogger()
    if root.handlers:
        # Assume logging already configured.
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)
