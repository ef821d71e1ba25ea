"""
Execution models for the media job worker

Defines the structures that track a job while its pipeline runs: the units of
a stage, the per-stage run with its resume cursor, progress accounting and
the summary returned on success.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Iterator, Tuple
from dataclasses import dataclass, field


@dataclass(frozen=True)
class UnitRef:
    """
    Reference to one resumable piece of work within a stage.

    Units are ordered by ``key``; the order has to be stable across attempts
    because the checkpoint cursor is an index into it.
    """
    key: str
    name: str
    path: Optional[str] = None
    size: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def sort_units(units: List[UnitRef]) -> List[UnitRef]:
    """Sort units lexicographically by key."""
    return sorted(units, key=lambda unit: unit.key)


@dataclass
class StageRun:
    """One execution of one stage for one job."""

    stage: str
    units: List[UnitRef]
    cursor: int = 0
    resumable: bool = True
    started_at: datetime = field(default_factory=datetime.utcnow)
    processed: int = 0
    resumed_from: int = field(init=False, default=0)

    def __post_init__(self):
        self.units = sort_units(self.units)
        self.cursor = max(0, min(self.cursor, len(self.units)))
        self.resumed_from = self.cursor

    @property
    def total(self) -> int:
        return len(self.units)

    @property
    def skipped(self) -> int:
        """Units skipped because a previous attempt completed them."""
        return self.resumed_from

    @property
    def is_complete(self) -> bool:
        return self.cursor >= len(self.units)

    def remaining(self) -> Iterator[Tuple[int, UnitRef]]:
        """Yield (index, unit) for every unit at or past the cursor."""
        for index in range(self.cursor, len(self.units)):
            yield index, self.units[index]

    def advance(self, index: int):
        """Mark the unit at ``index`` as complete."""
        self.cursor = index + 1
        self.processed += 1


class JobProgress:
    """
    Percent-complete accounting for one job.

    percent = completed units / total units across all stages * 100. Stages
    that have not been enumerated yet are projected at the size of the most
    recently enumerated stage, since media files flow one-to-one from fetch
    through transform to publish. The reported value never goes down, and
    ``restore`` carries it over from an earlier attempt of the same job.
    """

    def __init__(self, stages: Tuple[str, ...], reported: int = 0):
        self.stages = tuple(stages)
        self._totals: Dict[str, int] = {}
        self._completed: Dict[str, int] = {}
        self._reported = max(0, min(100, reported))
        self.persisted = self._reported

    def restore(self, reported: int):
        """Raise the floor to a percent reported by an earlier attempt."""
        self._reported = max(self._reported, min(100, reported))
        self.persisted = max(self.persisted, self._reported)

    def enumerate_stage(self, stage: str, total: int, completed: int = 0):
        """Record the unit count of a stage and how many are already done."""
        self._totals[stage] = total
        self._completed[stage] = min(completed, total)

    def complete_unit(self, stage: str):
        self._completed[stage] = min(self._completed.get(stage, 0) + 1, self._totals.get(stage, 0))

    def complete_stage(self, stage: str):
        self._completed[stage] = self._totals.get(stage, 0)

    @property
    def completed_units(self) -> int:
        return sum(self._completed.values())

    @property
    def total_units(self) -> int:
        total = 0
        projected = 0
        for stage in self.stages:
            if stage in self._totals:
                projected = self._totals[stage]
                total += projected
            else:
                total += projected
        return total

    def percent(self) -> int:
        """Current percent, clamped to the last reported value and 0..100."""
        total = self.total_units
        if total <= 0:
            value = 100 if self._all_enumerated() else 0
        else:
            value = int(self.completed_units * 100 / total)
        value = max(0, min(100, value))
        self._reported = max(self._reported, value)
        return self._reported

    def finish(self) -> int:
        self._reported = 100
        return self._reported

    @property
    def last_reported(self) -> int:
        return self._reported

    def _all_enumerated(self) -> bool:
        return all(stage in self._totals for stage in self.stages)


@dataclass
class StageSummary:
    stage: str
    total_units: int
    processed_units: int
    skipped_units: int


@dataclass
class PipelineResult:
    """Outcome of a successful pipeline run."""

    job_id: str
    stages: List[StageSummary] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    def get_duration(self) -> Optional[float]:
        """Get run duration in seconds if completed."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def processed_units(self) -> int:
        return sum(summary.processed_units for summary in self.stages)

    @property
    def skipped_units(self) -> int:
        return sum(summary.skipped_units for summary in self.stages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "stages": [
                {
                    "stage": s.stage,
                    "total_units": s.total_units,
                    "processed_units": s.processed_units,
                    "skipped_units": s.skipped_units
                }
                for s in self.stages
            ],
            "processed_units": self.processed_units,
            "skipped_units": self.skipped_units,
            "duration_seconds": self.get_duration()
        }
