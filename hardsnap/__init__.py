"""
Hardsnap - hardlinked point-in-time snapshots of a file tree.

This package rotates generations of hardlinked snapshot directories
(hourly, daily, weekly, monthly) and repairs hardlinks broken by renames
by re-linking byte-identical files.
"""

__version__ = "0.1.0"

# Export public API
from .config import CycleDefinition, DEFAULT_CYCLES, load_config
from .metadata import SnapshotMetadata, read_metadata, write_metadata
from .operations import SnapshotOperations
from .reconcile import CrossDeviceError, DuplicateReconciler, MergeError, ReconcileError, ReconcileOptions
from .roller import CycleRoller
from .rotation import RotationEngine

__all__ = [
    "CycleDefinition", "DEFAULT_CYCLES", "load_config",
    "SnapshotMetadata", "read_metadata", "write_metadata",
    "SnapshotOperations",
    "CrossDeviceError", "DuplicateReconciler", "MergeError", "ReconcileError", "ReconcileOptions",
    "CycleRoller", "RotationEngine",
]
