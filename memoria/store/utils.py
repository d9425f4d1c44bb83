from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)


def changes(rowcount: int | None) -> int:
    if rowcount is None or rowcount < 0:
        return 0
    return int(rowcount)
