import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .config import CycleDefinition, DEFAULT_CYCLES
from .metadata import SnapshotMetadata, try_read_metadata, write_metadata
from .mirror import TreeMirror
from .reconcile import DuplicateReconciler, ReconcileError, ReconcileOptions, ReconcileStats
from .roller import CycleRoller, CURRENT_NAME
from .rotation import RotationEngine, RotationReport


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('hardsnap')


class SnapshotOperations:
    """Handles the operations on one backup root: backup, rotate, reconcile, stamp and status."""

    def __init__(self, backup_root: Union[str, Path], cycles: Sequence[CycleDefinition] = DEFAULT_CYCLES,
                 current_name: str = CURRENT_NAME):
        """
        Initialize SnapshotOperations for a backup root.

        Args:
            backup_root: Directory holding "current" and the generation directories
            cycles: Cycle definitions in evaluation order
            current_name: Name of the always-fresh snapshot directory

        Raises:
            ValueError: If backup_root exists but is not a directory
        """
        self.backup_root = Path(backup_root)
        if self.backup_root.exists() and not self.backup_root.is_dir():
            raise ValueError(f"Backup root '{backup_root}' is not a directory")
        self.cycles = tuple(cycles)
        self.roller = CycleRoller(self.backup_root, current_name=current_name)
        self.engine = RotationEngine(self.backup_root, self.cycles, roller=self.roller)
        logger.debug(f"Initialized SnapshotOperations for '{self.backup_root}'")

    @property
    def current(self) -> Path:
        return self.roller.current

    def rotate(self) -> RotationReport:
        """
        Rotate all cycles of the backup root.

        Leftovers of an interrupted earlier run are cleaned up first.

        Returns:
            RotationReport: What was rolled, kept and skipped

        Raises:
            ValueError: If "current" or its metadata record is missing
            RuntimeError: If rolling a cycle fails
        """
        try:
            self.roller.purge_stale()
            report = self.engine.rotate()
            logger.info(f"Rotation finished, rolled: {', '.join(report.rolled) or 'nothing'}")
            return report
        except ValueError as e:
            logger.error(f"Error rotating snapshots: {str(e)}")
            raise
        except OSError as e:
            logger.error(f"Error rotating snapshots: {str(e)}")
            raise RuntimeError(f"Failed to rotate snapshots: {str(e)}") from e

    def reconcile(self, paths: Iterable[Union[str, Path]],
                  options: Optional[ReconcileOptions] = None) -> ReconcileStats:
        """
        Re-link byte-identical files under the given paths.

        Args:
            paths: Files and directories to scan
            options: Reconciliation options, defaults apply when omitted

        Returns:
            ReconcileStats: Counters and reclaimed bytes

        Raises:
            ReconcileError: If the run had to abort (cross-device or failed relink)
        """
        options = options or ReconcileOptions()
        reconciler = DuplicateReconciler(options)
        try:
            stats = reconciler.reconcile(paths)
        except ReconcileError as e:
            logger.error(f"Reconciliation aborted: {str(e)}")
            raise
        logger.info(
            f"Reconciliation {'(dry run) ' if options.dry_run else ''}finished: {stats.files_scanned} files, "
            f"{stats.merges} merges, {stats.bytes_saved} bytes reclaimed"
        )
        return stats

    def stamp(self, when=None) -> SnapshotMetadata:
        """Write a fresh metadata record into "current"."""
        return write_metadata(self.current, when)

    def backup(self, mirror: TreeMirror, reconcile: bool = False,
               options: Optional[ReconcileOptions] = None) -> RotationReport:
        """
        Refresh "current" through a mirror, stamp it, optionally reconcile it, and rotate.

        A failing mirror stops the run before anything is stamped or rotated, so
        existing generations are left as they were.

        Reconciliation scans "current" together with the newest generation, where
        the old name of a file renamed at the source still holds the shared inode.

        Args:
            mirror: Transfer that refreshes "current"
            reconcile: Repair rename-broken hardlinks before rotating
            options: Reconciliation options, defaults to merging across the two trees only

        Returns:
            RotationReport: Result of the rotation

        Raises:
            RuntimeError: If the mirror or the rotation fails
        """
        logger.info(f"Starting backup into '{self.current}'")
        try:
            mirror.refresh(self.current)
        except Exception as e:
            logger.error(f"Mirroring failed, rotation skipped: {str(e)}")
            raise RuntimeError(f"Failed to refresh current snapshot: {str(e)}") from e

        self.stamp()
        if reconcile:
            paths = [self.current]
            newest = self.roller.find_generation(self.cycles[0], 1) if self.cycles else None
            if newest is not None:
                paths.append(newest)
            self.reconcile(paths, options or ReconcileOptions(scope="different-top"))
        return self.rotate()

    def status(self) -> List[Dict[str, Any]]:
        """
        Describe the generations of every cycle.

        Returns:
            List[Dict[str, Any]]: One entry per generation with:
                - cycle: Cycle name
                - index: Generation index
                - name: Directory name
                - created: Creation epoch seconds, or None when unreadable
        """
        rows = []
        for cycle in self.cycles:
            for index, path in self.roller.generations(cycle):
                record = try_read_metadata(path)
                rows.append({
                    'cycle': cycle.name,
                    'index': index,
                    'name': path.name,
                    'created': record.created if record else None,
                })
        return rows

    def close(self) -> None:
        """
        Wait for background deletions started by this instance.

        Retired generations are removed in the background while rotation
        continues; closing makes sure none is left half deleted.
        """
        if self.roller.pending:
            logger.debug(f"Waiting for {self.roller.pending} background deletion(s)")
        self.roller.wait()

    def __enter__(self) -> 'SnapshotOperations':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
