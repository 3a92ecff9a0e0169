"""Time source for every bounded wait in the workflow.

Waits are plain poll loops over `now()`/`sleep()`, so tests can swap in a
clock that advances instantly.
"""

from __future__ import annotations

import time


class Clock:
    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()

__all__ = ["SYSTEM_CLOCK", "Clock"]
