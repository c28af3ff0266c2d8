"""Logging setup, timers and activity-tree summaries."""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any

from corpus_agent.types import ActivityNode

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class Timer:
    """Simple context timer used by the pipeline and the session coordinator."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def summarize_activity(nodes: list[ActivityNode]) -> dict[str, Any]:
    """Count nodes by status and measure the depth of an activity forest."""

    statuses: Counter[str] = Counter()
    max_depth = 0
    stack = [(node, 1) for node in nodes]
    while stack:
        node, depth = stack.pop()
        statuses[node.status.value] += 1
        max_depth = max(max_depth, depth)
        stack.extend((child, depth + 1) for child in node.children)
    return {
        "total": sum(statuses.values()),
        "by_status": dict(statuses),
        "max_depth": max_depth,
    }
