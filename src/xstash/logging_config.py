"""Configure logging for the application."""

import logging
import sys


def setup_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger("xstash")
    root.setLevel(level)
    # setup_logging runs once per CLI invocation; avoid stacking handlers
    for existing in list(root.handlers):
        root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Suppress noisy httpx and SQL logs unless in debug mode
    quiet_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger("httpx").setLevel(quiet_level)
    logging.getLogger("httpcore").setLevel(quiet_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
