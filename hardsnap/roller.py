import os
import uuid
import shutil
import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import CycleDefinition
from .metadata import read_metadata


logger = logging.getLogger('hardsnap')

CURRENT_NAME = "current"
TRASH_PREFIX = ".hardsnap-trash-"
PARTIAL_PREFIX = ".hardsnap-partial-"


def clone_tree(source: Union[str, Path], destination: Union[str, Path]) -> int:
    """
    Recreate `source` at `destination` with every non-directory hardlinked.

    Directories are created fresh and receive the permission bits and
    timestamps of their source. Symlinks are linked themselves, never
    followed.

    Args:
        source: Directory to clone
        destination: Path to create, must not exist

    Returns:
        int: Number of entries linked

    Raises:
        OSError: If any directory or link cannot be created
    """
    linked = 0
    os.mkdir(destination)
    with os.scandir(source) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        target = os.path.join(destination, entry.name)
        if entry.is_dir(follow_symlinks=False):
            linked += clone_tree(entry.path, target)
        else:
            os.link(entry.path, target, follow_symlinks=False)
            linked += 1
    # Set after filling the directory so its mtime survives
    shutil.copystat(source, destination, follow_symlinks=False)
    return linked


def _delete_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
        logger.debug(f"Deleted '{path}'")
    except OSError as e:
        logger.error(f"Background deletion of '{path}' failed: {e}")


class CycleRoller:
    """Shifts generation directories of one backup root and clones new ones."""

    def __init__(self, backup_root: Union[str, Path], current_name: str = CURRENT_NAME):
        """
        Initialize the roller for a backup root.

        Args:
            backup_root: Directory holding "current" and all generations
            current_name: Name of the always-fresh snapshot inside backup_root
        """
        self.backup_root = Path(backup_root)
        self.current = self.backup_root / current_name
        self._deletions: List[Tuple[threading.Thread, Path]] = []

    def generations(self, cycle: CycleDefinition) -> List[Tuple[int, Path]]:
        """List (index, path) of the existing generations of `cycle`, oldest name last."""
        found = []
        if not self.backup_root.is_dir():
            return found
        with os.scandir(self.backup_root) as it:
            for entry in it:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                parsed = cycle.parse_dir_name(entry.name)
                if parsed is not None:
                    found.append((parsed[0], Path(entry.path)))
        found.sort(key=lambda item: (item[0], item[1].name))
        return found

    def find_generation(self, cycle: CycleDefinition, index: int) -> Optional[Path]:
        """Return the directory of generation `index`, or None if there is none."""
        matches = [path for i, path in self.generations(cycle) if i == index]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"Cycle '{cycle.name}' has {len(matches)} directories for generation {index}: "
                f"{', '.join(p.name for p in matches)}"
            )
        return matches[-1]

    def roll(self, cycle: CycleDefinition, generation_count: Optional[int] = None,
             label: Optional[str] = None) -> Path:
        """
        Age the generations of `cycle` by one slot and clone a new generation 1.

        Generations at index `generation_count` and above are quarantined and
        deleted in the background, generations below are renamed one slot up,
        and "current" is cloned into generation 1.

        Args:
            cycle: Cycle to roll
            generation_count: Generations to keep, defaults to cycle.max_generations
            label: Name suffix of the new generation, defaults to the label of "current"

        Returns:
            Path: The new generation 1 directory

        Raises:
            ValueError: If "current" does not exist or generation_count < 1
            OSError: If a rename or the clone fails
        """
        count = cycle.max_generations if generation_count is None else generation_count
        if count < 1:
            raise ValueError(f"Invalid generation count: {count}")
        if not self.current.is_dir():
            raise ValueError(f"Current snapshot '{self.current}' does not exist")
        if label is None:
            label = read_metadata(self.current).label

        existing = self.generations(cycle)

        for index, path in existing:
            if index >= count:
                self._discard(path, cycle)

        for index, path in sorted(existing, key=lambda item: item[0], reverse=True):
            if index >= count:
                continue
            parsed = cycle.parse_dir_name(path.name)
            target = self.backup_root / cycle.dir_name(index + 1, parsed[1])
            logger.debug(f"Renaming '{path.name}' to '{target.name}'")
            os.rename(path, target)

        newest = self.backup_root / cycle.dir_name(1, label)
        partial = self.backup_root / f"{PARTIAL_PREFIX}{cycle.name}-{uuid.uuid4().hex[:8]}"
        try:
            linked = clone_tree(self.current, partial)
            os.rename(partial, newest)
        except BaseException:
            if partial.exists():
                shutil.rmtree(partial, ignore_errors=True)
            raise

        logger.info(f"Rolled cycle '{cycle.name}': created '{newest.name}' with {linked} linked entries")
        return newest

    def _discard(self, path: Path, cycle: CycleDefinition) -> None:
        trash = self.backup_root / f"{TRASH_PREFIX}{path.name}-{uuid.uuid4().hex[:8]}"
        os.rename(path, trash)
        logger.info(f"Cycle '{cycle.name}': retiring '{path.name}'")
        self._schedule_deletion(trash)

    def _schedule_deletion(self, path: Path) -> None:
        thread = threading.Thread(target=_delete_tree, args=(path,), name=f"delete-{path.name}")
        thread.start()
        self._deletions.append((thread, path))

    def purge_stale(self) -> int:
        """Schedule deletion of quarantine and partial directories left by a crash."""
        count = 0
        if not self.backup_root.is_dir():
            return count
        running = {path for thread, path in self._deletions if thread.is_alive()}
        with os.scandir(self.backup_root) as it:
            for entry in it:
                if not entry.name.startswith((TRASH_PREFIX, PARTIAL_PREFIX)):
                    continue
                path = Path(entry.path)
                if path in running or not entry.is_dir(follow_symlinks=False):
                    continue
                logger.warning(f"Removing leftover directory '{entry.name}'")
                self._schedule_deletion(path)
                count += 1
        return count

    @property
    def pending(self) -> int:
        """Number of background deletions still running."""
        self._deletions = [(t, p) for t, p in self._deletions if t.is_alive()]
        return len(self._deletions)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for background deletions to finish.

        Returns:
            bool: True if no deletion is still running
        """
        for thread, _ in list(self._deletions):
            thread.join(timeout)
        return self.pending == 0
