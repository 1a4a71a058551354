import os
import pytest
from datetime import datetime, timedelta

import hardsnap.roller as roller_module
from hardsnap.config import CycleDefinition
from hardsnap.metadata import read_metadata
from hardsnap.roller import CycleRoller, PARTIAL_PREFIX, TRASH_PREFIX, clone_tree
from tests.conftest import TestBase, inode


CYCLE = CycleDefinition(
    name="hour", max_generations=3, dir_template="hour_%02d_%s", preference=None,
    forced_interval=40, interval_unit="minutes", interval_seconds=60, calendar_field="minute",
)


class TestCycleRoller(TestBase):
    """Test slot shifting, pruning and cloning."""

    def test_first_roll_creates_generation_one(self):
        """Rolling a cycle without generations creates exactly one clone of current."""
        newest = self.roller.roll(CYCLE)

        assert newest.name == "hour_01_2024-01-03_1000"
        assert self.directories() == ["current", "hour_01_2024-01-03_1000"]
        assert read_metadata(newest).label == "2024-01-03_1000"

    def test_clone_shares_inodes(self):
        """Files in the new generation are hardlinks of the files in current."""
        newest = self.roller.roll(CYCLE)

        for rel in ["file_1.txt", "binary.bin", "docs/readme.txt"]:
            assert inode(newest / rel) == inode(self.current / rel)
        assert os.lstat(self.current / "file_1.txt").st_nlink == 2
        assert inode(newest / "docs") != inode(self.current / "docs")

    def test_clone_links_symlinks_without_following(self):
        os.symlink("file_1.txt", self.current / "alias")
        newest = self.roller.roll(CYCLE)

        assert os.path.islink(newest / "alias")
        assert os.readlink(newest / "alias") == "file_1.txt"

    def test_clone_preserves_directory_metadata(self):
        os.chmod(self.current / "docs", 0o750)
        os.utime(self.current / "docs", (1000000000, 1000000000))
        newest = self.roller.roll(CYCLE)

        st = os.stat(newest / "docs")
        assert st.st_mode & 0o777 == 0o750
        assert int(st.st_mtime) == 1000000000

    def test_repeated_rolls_keep_max_generations(self):
        """After more rolls than slots, exactly max_generations directories exist."""
        start = datetime(2024, 1, 3, 10, 0)
        for i in range(6):
            self.stamp(start + timedelta(hours=i))
            self.roller.roll(CYCLE)
            expected = min(i + 1, CYCLE.max_generations)
            assert len(self.roller.generations(CYCLE)) == expected

        assert self.roller.wait(timeout=30)
        assert self.directories() == [
            "current",
            "hour_01_2024-01-03_1500",
            "hour_02_2024-01-03_1400",
            "hour_03_2024-01-03_1300",
        ]
        assert not [p for p in self.backup_root.iterdir() if p.name.startswith(TRASH_PREFIX)]

    def test_shift_is_a_rename(self):
        """Shifting keeps the directory (same inode) and its label."""
        first = self.roller.roll(CYCLE)
        first_inode = inode(first)

        self.stamp(datetime(2024, 1, 3, 11, 0))
        self.roller.roll(CYCLE)

        shifted = self.roller.find_generation(CYCLE, 2)
        assert shifted.name == "hour_02_2024-01-03_1000"
        assert inode(shifted) == first_inode
        assert read_metadata(shifted).label == "2024-01-03_1000"

    def test_explicit_generation_count(self):
        """A smaller generation count prunes the surplus slots."""
        for hour in range(10, 13):
            self.stamp(datetime(2024, 1, 3, hour, 0))
            self.roller.roll(CYCLE)

        self.roller.roll(CYCLE, generation_count=1)
        self.roller.wait(timeout=30)

        assert [i for i, _ in self.roller.generations(CYCLE)] == [1]

    def test_roll_without_current(self):
        """Rolling requires a current snapshot."""
        roller = CycleRoller(self.working_dir / "empty")
        with pytest.raises(ValueError):
            roller.roll(CYCLE)

    def test_invalid_generation_count(self):
        with pytest.raises(ValueError):
            self.roller.roll(CYCLE, generation_count=0)

    def test_failed_clone_leaves_no_partial(self, monkeypatch):
        """A clone that fails halfway removes its partial directory and creates no generation."""
        def failing_link(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(roller_module.os, "link", failing_link)
        with pytest.raises(OSError):
            self.roller.roll(CYCLE)

        assert self.roller.generations(CYCLE) == []
        assert not [p for p in self.backup_root.iterdir() if p.name.startswith(PARTIAL_PREFIX)]

    def test_purge_stale(self):
        """Leftover quarantine and partial directories are removed."""
        (self.backup_root / f"{TRASH_PREFIX}hour_03_x-deadbeef" / "sub").mkdir(parents=True)
        (self.backup_root / f"{PARTIAL_PREFIX}hour-deadbeef").mkdir()

        assert self.roller.purge_stale() == 2
        assert self.roller.wait(timeout=30)
        assert self.directories() == ["current"]
        assert not [p for p in self.backup_root.iterdir() if p.name.startswith(".hardsnap-")]

    def test_find_generation_missing(self):
        assert self.roller.find_generation(CYCLE, 1) is None


def test_clone_tree_counts_entries(temp_dir):
    source = temp_dir / "src"
    (source / "a" / "b").mkdir(parents=True)
    (source / "a" / "b" / "f").write_text("x")
    (source / "g").write_text("y")

    assert clone_tree(source, temp_dir / "dst") == 2
    assert (temp_dir / "dst" / "a" / "b" / "f").read_text() == "x"
