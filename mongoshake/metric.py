"""Per-collection progress of the full sync."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Status(str, Enum):
    WAIT_START = "wait start"
    PROCESSING = "in processing"
    FINISH = "finish"


@dataclass
class CollectionMetric:
    """Sync status and document counters of one collection."""

    status: Status = Status.WAIT_START
    total_count: int = 0
    finish_count: int = 0

    def __str__(self) -> str:
        if self.status is Status.WAIT_START:
            return "-"
        counts = f"({self.finish_count}/{self.total_count})"
        if self.total_count == 0:
            return f"100% {counts}"
        return f"{self.finish_count / self.total_count * 100:.2f}% {counts}"