"""Leveled patient trace output.

The trace is a human-readable, month-by-month narrative of selected
patients (onsets, infections, tests, deaths). It is written through the
standard logging machinery so that callers choose the destination with
ordinary handlers; a FileHandler on the "hivtb_microsim.trace" logger
reproduces a classic trace file.

Contract:
  - write(level, message) is a no-op when the tracer is disabled or
    level exceeds the configured verbosity
  - write() never raises; tracing can't change or abort a run
"""

from __future__ import annotations

import logging
from typing import Optional

TRACE_LOGGER_NAME = 'hivtb_microsim.trace'

logger = logging.getLogger(__name__)


class Tracer:
    """Level-gated trace sink.

    Args:
        level: Maximum message level written; 0 disables tracing.
        sink: Logger receiving the messages. Defaults to the
            "hivtb_microsim.trace" logger.
    """

    def __init__(self, level: int = 0, sink: Optional[logging.Logger] = None):
        self.level = level
        self.sink = sink if sink is not None else logging.getLogger(TRACE_LOGGER_NAME)

    @property
    def enabled(self) -> bool:
        return self.level > 0 and self.sink is not None

    def is_enabled_for(self, level: int) -> bool:
        return self.enabled and level <= self.level

    def write(self, level: int, message: str) -> None:
        if not self.is_enabled_for(level):
            return
        try:
            self.sink.info(message)
        except Exception:  # noqa: BLE001 - trace failures never reach the simulation
            logger.debug("trace write failed", exc_info=True)

    @classmethod
    def to_file(cls, path: str, level: int = 1) -> 'Tracer':
        """Tracer writing bare messages to a file."""
        sink = logging.getLogger(f"{TRACE_LOGGER_NAME}.{path}")
        sink.propagate = False
        sink.setLevel(logging.INFO)
        handler = logging.FileHandler(path, mode='w')
        handler.setFormatter(logging.Formatter('%(message)s'))
        sink.addHandler(handler)
        return cls(level=level, sink=sink)
