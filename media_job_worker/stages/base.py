"""
Base stage unit provider interface.

Every pipeline stage (fetch, transform, publish) is driven through the same
contract: enumerate the stage's units for a job, then process them one at a
time. The orchestrator owns ordering, checkpointing and progress.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from ..models.job import JobStatus
from ..models.execution import StageRun, UnitRef

if TYPE_CHECKING:
    from ..core.context import JobContext


ProgressCallback = Callable[[Any], None]


class StageUnitProvider(ABC):
    """
    Abstract base class for all stage unit providers.

    Attributes:
        name: Stage name, also the checkpoint key and progress tag
        status: Coarse status reported while the stage runs
        resumable: Whether the stage checkpoints after every unit
        watch_interval: Stall-detection interval in seconds, None disables it
        unit_timeout: Total time budget per unit in seconds, None disables it
    """

    name: str = "stage"
    status: JobStatus = JobStatus.QUEUED

    def __init__(
        self,
        resumable: bool = True,
        watch_interval: Optional[float] = None,
        unit_timeout: Optional[float] = None
    ):
        self.resumable = resumable
        self.watch_interval = watch_interval
        self.unit_timeout = unit_timeout

    @abstractmethod
    async def enumerate_units(self, ctx: "JobContext") -> List[UnitRef]:
        """
        List the units of this stage for a job.

        Called on every attempt; the result does not need to match what a
        previous attempt saw.

        Args:
            ctx: Job context

        Returns:
            Units of work (the orchestrator sorts them by key)
        """

    async def prepare(self, ctx: "JobContext", run: StageRun) -> None:
        """
        Hook run once per attempt before the first unit is processed.

        Must be idempotent: a redelivered job runs it again.
        """

    @abstractmethod
    async def process_unit(self, ctx: "JobContext", unit: UnitRef, progress: ProgressCallback) -> Any:
        """
        Process exactly one unit.

        Args:
            ctx: Job context
            unit: Unit to process
            progress: Callback to report incremental progress (any value);
                keeps the stall watchdog from firing

        Returns:
            Provider-specific result

        Raises:
            UnitError: If the unit failed
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} stage={self.name} resumable={self.resumable}>"
