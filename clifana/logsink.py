"""Process-wide bounded log ring, fed by the ``logging`` module.

Every ``clifana.*`` logger writes through :class:`RingHandler` into one
:class:`LogRing`, which the renderer snapshots once per frame. The same lines
are appended to a log file for post-mortem inspection.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from collections.abc import Mapping
from pathlib import Path

from clifana.config import ENV_LOG

DEFAULT_CAPACITY = 1024

LOG_FORMAT = "[%(asctime)s %(levelname)s %(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


class LogRing:
    """Fixed-capacity log buffer, newest entry first.

    The lock is held for a single insert or a single snapshot copy, never
    across rendering or I/O.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._lines: deque[str] = deque()
        self._lock = threading.Lock()

    def emit(self, line: str) -> None:
        with self._lock:
            self._lines.appendleft(line)
            while len(self._lines) > self.capacity:
                self._lines.pop()

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class RingHandler(logging.Handler):
    """Logging handler that formats records into a :class:`LogRing`."""

    def __init__(self, ring: LogRing, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.ring = ring

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.ring.emit(self.format(record))
        except Exception:
            self.handleError(record)


# ── Verbosity ──────────────────────────────────────────────────────────────


def level_from_verbosity(verbosity: int) -> int:
    """0 → WARNING, 1 → INFO, 2+ → DEBUG."""
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def resolve_verbosity(
    config_level: int, debug_flags: int, environ: Mapping[str, str] | None = None
) -> int:
    """Pick the effective verbosity: the louder of config and ``-d`` flags,
    unless ``CLIFANA_LOG`` names a level explicitly."""
    env = os.environ if environ is None else environ
    override = env.get(ENV_LOG)
    if override is not None:
        name = override.strip().lower()
        if name in ("warn", "warning"):
            return 0
        if name == "info":
            return 1
        return 2
    return max(config_level, debug_flags)


def setup_logging(
    verbosity: int,
    ring: LogRing,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Attach the ring (and optional append-only file) to the ``clifana`` logger.

    Calling it again replaces the handlers from the previous call.
    """
    logger = logging.getLogger("clifana")
    logger.setLevel(level_from_verbosity(verbosity))
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    ring_handler = RingHandler(ring)
    ring_handler.setFormatter(formatter)
    logger.addHandler(ring_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
