import math
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .config import CycleDefinition, DEFAULT_CYCLES
from .metadata import SnapshotMetadata, read_metadata, try_read_metadata
from .roller import CycleRoller, CURRENT_NAME


logger = logging.getLogger('hardsnap')


@dataclass
class CycleDecision:
    """Outcome of evaluating one cycle."""

    name: str
    rolled: bool
    reason: str
    age: float
    time_field: int
    directory: Optional[Path] = None


@dataclass
class RotationReport:
    """Everything one rotation run decided."""

    current: SnapshotMetadata
    decisions: List[CycleDecision] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)

    @property
    def rolled(self) -> List[str]:
        return [d.name for d in self.decisions if d.rolled]


class RotationEngine:
    """Decides, cycle by cycle, whether the generations of a backup root roll."""

    def __init__(self, backup_root: Union[str, Path], cycles: Sequence[CycleDefinition] = DEFAULT_CYCLES,
                 roller: Optional[CycleRoller] = None, current_name: str = CURRENT_NAME):
        self.backup_root = Path(backup_root)
        self.cycles = tuple(cycles)
        self.roller = roller or CycleRoller(self.backup_root, current_name=current_name)

    def rotate(self) -> RotationReport:
        """
        Evaluate every cycle in order and roll those whose trigger fires.

        A cycle rolls when the calendar field of the current snapshot equals
        its preference, or when its generation 1 is at least forced_interval
        old. A missing generation 1, or one without a readable metadata record,
        counts as infinitely old. When a gating cycle does not roll, the
        cycles after it are skipped.

        Returns:
            RotationReport: decisions, skipped cycles and anomalies

        Raises:
            ValueError: If "current" or its metadata record is missing or corrupt
            OSError: If rolling a cycle fails
        """
        current_dir = self.roller.current
        if not current_dir.is_dir():
            raise ValueError(f"Current snapshot '{current_dir}' does not exist, rotation aborted")
        try:
            current = read_metadata(current_dir)
        except FileNotFoundError:
            raise ValueError(f"Current snapshot '{current_dir}' has no metadata record, rotation aborted") from None

        report = RotationReport(current=current)
        logger.info(f"Starting rotation of '{self.backup_root}' for snapshot {current.label}")

        for position, cycle in enumerate(self.cycles):
            decision = self._evaluate(cycle, current, report)
            if decision.rolled:
                decision.directory = self.roller.roll(cycle, cycle.max_generations, label=current.label)
            report.decisions.append(decision)

            if cycle.gates_lower and not decision.rolled:
                report.skipped = [c.name for c in self.cycles[position + 1:]]
                if report.skipped:
                    logger.info(f"Cycle '{cycle.name}' did not roll, skipping {', '.join(report.skipped)}")
                break

        if not report.rolled:
            logger.info("No cycle due for rotation")
        return report

    def _evaluate(self, cycle: CycleDefinition, current: SnapshotMetadata,
                  report: RotationReport) -> CycleDecision:
        time_field = cycle.time_field(current.moment)

        newest = self.roller.find_generation(cycle, 1)
        if newest is None:
            age = math.inf
            logger.debug(f"Cycle '{cycle.name}' has no generation 1")
        else:
            record = try_read_metadata(newest)
            if record is None:
                age = math.inf
                anomaly = f"Generation '{newest.name}' has no readable metadata record, forcing a roll"
                logger.warning(anomaly)
                report.anomalies.append(anomaly)
            else:
                age = (current.created - record.created) / cycle.interval_seconds

        if cycle.preference is not None and time_field == cycle.preference:
            reason = f"{cycle.calendar_field} is {time_field}"
            rolled = True
        elif age >= cycle.forced_interval:
            reason = "no generation 1" if newest is None else f"age {age:.2f} {cycle.interval_unit}"
            rolled = True
        else:
            reason = f"age {age:.2f} of {cycle.forced_interval:g} {cycle.interval_unit}"
            rolled = False

        logger.info(f"Cycle '{cycle.name}': {'roll' if rolled else 'keep'} ({reason})")
        return CycleDecision(name=cycle.name, rolled=rolled, reason=reason, age=age, time_field=time_field)
