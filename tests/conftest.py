import os
import pytest
import tempfile
from datetime import datetime
from pathlib import Path

from hardsnap.metadata import write_metadata
from hardsnap.roller import CycleRoller


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def backup_root(temp_dir):
    """Create a backup root with a populated and stamped 'current'."""
    root = temp_dir / "backups"
    current = root / "current"
    create_test_files(current)
    write_metadata(current, datetime(2024, 1, 3, 10, 0))
    return root


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for hardsnap tests providing an isolated backup root."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Creates a backup root with a 'current' snapshot
        3. Creates test files in 'current' and stamps it
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.backup_root = self.working_dir / "backups"
        self.current = self.backup_root / "current"
        create_test_files(self.current)
        self.stamp(datetime(2024, 1, 3, 10, 0))

        self.log_file = self.working_dir / "hardsnap.log"
        self.roller = CycleRoller(self.backup_root)

    def tearDown(self):
        """Wait for background deletions, then remove the temporary directory."""
        self.roller.wait()
        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not clean up temporary directory: {e}")

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def stamp(self, when, directory=None):
        """Write a metadata record for `when` into `directory` (default: current)."""
        return write_metadata(directory or self.current, when)

    def directories(self):
        """Names of the visible directories in the backup root."""
        return sorted(
            entry.name for entry in self.backup_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )


# ---- Helper functions for both approaches ----

def create_test_files(directory, count=4):
    """Create a small tree of text and binary files in `directory`."""
    os.makedirs(directory / "docs", exist_ok=True)
    for i in range(1, count + 1):
        with open(directory / f"file_{i}.txt", "w") as f:
            f.write(f"Content of file {i}")
    with open(directory / "docs" / "readme.txt", "w") as f:
        f.write("Nested content")
    with open(directory / "binary.bin", "wb") as f:
        f.write(os.urandom(1024))


def write_blob(path, content, mtime=None, mode=None):
    """Write `content` to `path`, creating parents, and optionally set mtime and mode."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mode is not None:
        os.chmod(path, mode)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def inode(path):
    return os.lstat(path).st_ino
