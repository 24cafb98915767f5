"""Configure application logging to a file and stderr."""

import logging
import os
import sys

from chordstage import config

# Set by setup_logging(); the CLI points to it on offline failures.
LOG_FILE_PATH: str | None = None


def setup_logging(level: int = logging.INFO) -> None:
    """Configure the package logger: file in temp dir (DEBUG) + stderr at *level*."""
    root = logging.getLogger("chordstage")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    global LOG_FILE_PATH
    log_path = None
    try:
        os.makedirs(config.LOG_DIR, exist_ok=True)
        log_path = os.path.join(config.LOG_DIR, "chordstage.log")
        LOG_FILE_PATH = log_path
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError:
        log_path = None

    eh = logging.StreamHandler(sys.stderr)
    eh.setLevel(level)
    eh.setFormatter(fmt)
    root.addHandler(eh)

    root.debug("Logging started; file: %s", log_path or "(none)")
