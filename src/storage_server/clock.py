"""Wall-clock helpers. Every persisted timestamp is epoch milliseconds."""

import time
from collections.abc import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)
