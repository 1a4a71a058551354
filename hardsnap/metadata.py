import os
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger('hardsnap')

METADATA_FILE = ".hardsnap_time"
LABEL_FORMAT = "%Y-%m-%d_%H%M"


@dataclass(frozen=True)
class SnapshotMetadata:
    """Creation record of one snapshot tree."""

    label: str
    created: int

    @property
    def moment(self) -> datetime:
        """Creation instant as a local datetime."""
        return datetime.fromtimestamp(self.created)

    def serialize(self) -> str:
        return f"{self.label}\n{self.created}\n"

    @classmethod
    def from_time(cls, when: Union[datetime, float, int, None] = None) -> 'SnapshotMetadata':
        """
        Build a record for the given instant.

        Args:
            when: datetime, epoch seconds, or None for now

        Returns:
            SnapshotMetadata: record with label and whole epoch seconds
        """
        if when is None:
            when = datetime.now()
        elif not isinstance(when, datetime):
            when = datetime.fromtimestamp(when)
        return cls(label=when.strftime(LABEL_FORMAT), created=int(when.timestamp()))


def metadata_path(root: Union[str, Path]) -> Path:
    return Path(root) / METADATA_FILE


def read_metadata(root: Union[str, Path]) -> SnapshotMetadata:
    """
    Read the metadata record stored in a snapshot tree.

    Args:
        root: Snapshot directory holding the record

    Returns:
        SnapshotMetadata: the parsed record

    Raises:
        FileNotFoundError: If the record does not exist
        ValueError: If the record is malformed
    """
    path = metadata_path(root)
    with open(path, 'r', encoding='utf-8') as f:
        lines = f.read().splitlines()

    if len(lines) != 2:
        raise ValueError(f"Metadata record '{path}' has {len(lines)} lines, expected 2")

    label = lines[0].strip()
    if not label:
        raise ValueError(f"Metadata record '{path}' has an empty label")
    try:
        created = int(lines[1].strip())
    except ValueError:
        raise ValueError(f"Metadata record '{path}' has a non-integer timestamp: {lines[1]!r}") from None

    return SnapshotMetadata(label=label, created=created)


def write_metadata(root: Union[str, Path], when: Union[datetime, float, int, None] = None) -> SnapshotMetadata:
    """
    Write a fresh metadata record into a snapshot tree.

    The record is written to a temporary file and moved into place, so the
    record always receives a new inode. Generations that share the previous
    record through hardlinks keep their own copy untouched.

    Args:
        root: Snapshot directory to stamp
        when: Creation instant, defaults to now

    Returns:
        SnapshotMetadata: the record that was written
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Snapshot directory '{root}' does not exist")

    record = SnapshotMetadata.from_time(when)
    fd, tmp_name = tempfile.mkstemp(prefix=METADATA_FILE + ".", dir=str(root))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(record.serialize())
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, metadata_path(root))
    except BaseException:
        # Also covers KeyboardInterrupt so no temp record is left behind
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    logger.info(f"Stamped '{root}' with {record.label} ({record.created})")
    return record


def try_read_metadata(root: Union[str, Path]) -> Optional[SnapshotMetadata]:
    """Read a record, returning None and logging when it is absent or corrupt."""
    try:
        return read_metadata(root)
    except FileNotFoundError:
        logger.warning(f"No metadata record in '{root}'")
    except (ValueError, OSError) as e:
        logger.warning(f"Unreadable metadata record in '{root}': {e}")
    return None
