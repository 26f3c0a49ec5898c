"""Data-loss classification between two successive snapshots."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from .types import ERROR, HEALTHY, WARNING, Snapshot, escalate

DEFAULT_THRESHOLD = 0.1


def data_loss_message(entity: str, previous: int, current: int) -> str:
    return f"Significant data loss detected in {entity}: Previous={previous}, Current={current}"


def empty_table_message(entity: str) -> str:
    return f"Critical table {entity} is empty"


def empty_tables(snapshot: Snapshot) -> list[str]:
    """Tracked entities whose row count is zero, in name order."""
    return sorted(name for name, count in snapshot.table_counts.items() if count == 0)


@dataclass(frozen=True)
class AnomalyDetector:
    """
    Compare a fresh snapshot against the previous one.

    A shared entity whose count fell below ``previous * (1 - threshold)``
    yields one data-loss warning. Entities missing from either side are not
    compared. Probe errors force ``error`` regardless of the counts.
    """

    threshold: float = DEFAULT_THRESHOLD

    def data_loss(self, current: Snapshot, previous: Optional[Snapshot]) -> list[str]:
        if previous is None:
            return []
        found: list[str] = []
        for entity, cur in current.table_counts.items():
            if entity not in previous.table_counts:
                continue
            prev = previous.table_counts[entity]
            if cur < prev - prev * self.threshold:
                found.append(data_loss_message(entity, prev, cur))
        return found

    def classify(self, current: Snapshot, previous: Optional[Snapshot]) -> Snapshot:
        losses = self.data_loss(current, previous)

        status = HEALTHY
        if current.warnings or losses:
            status = escalate(status, WARNING)
        if current.errors:
            status = escalate(status, ERROR)

        return replace(current, status=status, warnings=tuple(current.warnings) + tuple(losses))


def classify(current: Snapshot, previous: Optional[Snapshot], *, threshold: float = DEFAULT_THRESHOLD) -> Snapshot:
    return AnomalyDetector(threshold=threshold).classify(current, previous)
