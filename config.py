"""
Engine configuration and logging setup.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Tuple
import logging

# Status clock period (seconds)
DEFAULT_TICK_INTERVAL_SECONDS = 30.0

# Calendar given to lines that have no operating hours on record
DEFAULT_WINDOW_START = time(8, 0)
DEFAULT_WINDOW_END = time(17, 0)
DEFAULT_ACTIVE_DAYS: Tuple[int, ...] = (1, 2, 3, 4, 5)  # Mon-Fri, 0=Sunday

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class EngineConfig:
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    window_start: time = DEFAULT_WINDOW_START
    window_end: time = DEFAULT_WINDOW_END
    active_days: Tuple[int, ...] = DEFAULT_ACTIVE_DAYS

    def __post_init__(self) -> None:
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
