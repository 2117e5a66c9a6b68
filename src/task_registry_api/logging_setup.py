"""Root logger configuration for the service and scripts."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Install one stderr handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    root = logging.getLogger()
    root.setLevel(level if isinstance(level, int) else level.upper())
    if any(getattr(handler, "_task_registry", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler._task_registry = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # Route warnings.warn(...) into logging as 'py.warnings'.
    logging.captureWarnings(True)
