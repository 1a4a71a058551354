import os
import re
import sys
import stat
import uuid
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, TextIO, Tuple, Union


logger = logging.getLogger('hardsnap')

BUF_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_SIZE_FLOOR = 10240
PROGRESS_INTERVAL = 1000

SCOPES = ("any", "same-top", "different-top")
PERMISSION_MERGES = ("newer-wins", "union")

# Metadata records, hardsnap quarantine/partial/link temporaries, rsync --delay-updates staging
EXCLUDE_PATTERN = re.compile(r"(^|/)(\.hardsnap_time(\.[^/]*)?$|\.hardsnap-[^/]*(/|$)|\.~tmp~/)")

LINK_TEMP_PREFIX = ".hardsnap-link-"

InodeKey = Tuple[int, int]
Top = Tuple[str, str]


class ReconcileError(RuntimeError):
    """A reconciliation run had to stop."""


class CrossDeviceError(ReconcileError):
    """Two duplicate candidates live on different devices."""


class MergeError(ReconcileError):
    """Unlinking or relinking a file during a merge failed."""


@dataclass(frozen=True)
class FileIdentity:
    """What the engine knows about one path at the time it was stat'ed."""

    dev: int
    ino: int
    size: int
    nlink: int
    mode: int
    mtime_ns: int
    atime_ns: int
    blocks: int

    @property
    def key(self) -> InodeKey:
        return (self.dev, self.ino)

    @property
    def allocated(self) -> int:
        """Bytes allocated on disk."""
        return self.blocks * 512


def identify(path: Union[str, os.PathLike], st: Optional[os.stat_result] = None) -> FileIdentity:
    """Capture the identity of `path`, without following symlinks."""
    if st is None:
        st = os.lstat(path)
    return FileIdentity(
        dev=st.st_dev,
        ino=st.st_ino,
        size=st.st_size,
        nlink=st.st_nlink,
        mode=st.st_mode,
        mtime_ns=st.st_mtime_ns,
        atime_ns=st.st_atime_ns,
        blocks=st.st_blocks,
    )


def walk_tree(root: Union[str, os.PathLike]) -> Iterator[Tuple[str, os.stat_result]]:
    """
    Yield (path, stat) for every regular file under `root`, depth first.

    Entries are visited in name order within each directory. Symlinks are
    never followed and special files are skipped. A root that is a regular
    file is yielded on its own.
    """
    root = os.fspath(root)
    try:
        st = os.lstat(root)
    except FileNotFoundError:
        logger.warning(f"Path '{root}' does not exist, skipping")
        return
    if stat.S_ISREG(st.st_mode):
        yield root, st
    elif stat.S_ISDIR(st.st_mode):
        yield from _walk_dir(root)


def _walk_dir(directory: str) -> Iterator[Tuple[str, os.stat_result]]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning(f"Cannot read directory '{directory}': {e}")
        return

    for entry in entries:
        try:
            st = entry.stat(follow_symlinks=False)
        except FileNotFoundError:
            continue
        if stat.S_ISDIR(st.st_mode):
            yield from _walk_dir(entry.path)
        elif stat.S_ISREG(st.st_mode):
            yield entry.path, st


def files_identical(a: Union[str, os.PathLike], b: Union[str, os.PathLike], chunk_size: int = BUF_SIZE) -> bool:
    """Compare two files byte for byte."""
    with open(a, 'rb') as fa, open(b, 'rb') as fb:
        while True:
            chunk_a = fa.read(chunk_size)
            chunk_b = fb.read(chunk_size)
            if chunk_a != chunk_b:
                return False
            if not chunk_a:
                return True


def format_size(size: float) -> str:
    """Format a byte count in human-readable form."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


@dataclass(frozen=True)
class ReconcileOptions:
    """Knobs of one reconciliation run."""

    dry_run: bool = False
    size_floor: int = DEFAULT_SIZE_FLOOR
    scope: str = "any"
    permission_merge: str = "newer-wins"
    progress_report: bool = False
    action_report: bool = False

    def __post_init__(self):
        if self.size_floor < 0:
            raise ValueError(f"Size floor must not be negative: {self.size_floor}")
        if self.scope not in SCOPES:
            raise ValueError(f"Unknown scope '{self.scope}', expected one of {', '.join(SCOPES)}")
        if self.permission_merge not in PERMISSION_MERGES:
            raise ValueError(
                f"Unknown permission merge '{self.permission_merge}', expected one of {', '.join(PERMISSION_MERGES)}"
            )


@dataclass
class ReconcileStats:
    files_scanned: int = 0
    too_small: int = 0
    excluded: int = 0
    comparisons: int = 0
    merges: int = 0
    relinked: int = 0
    inodes_freed: int = 0
    bytes_saved: int = 0
    evicted: int = 0


class DuplicateReconciler:
    """
    Finds byte-identical files and turns them into one hardlink group.

    Files are bucketed by size. Each bucket keeps one representative path per
    distinct content seen so far, and every known inode keeps the list of
    paths sharing it. A new file whose inode is already known joins that
    group directly; otherwise it is compared against the representatives of
    its size and, on a match, the two groups are merged so that a single
    inode survives.

    The instance keeps its state between calls, so paths may be fed in
    several batches (for instance from a stream) within one run.
    """

    def __init__(self, options: Optional[ReconcileOptions] = None,
                 comparator: Callable[[str, str], bool] = files_identical,
                 out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        self.options = options or ReconcileOptions()
        self.comparator = comparator
        self._out = out
        self._err = err
        self.stats = ReconcileStats()

        self._representatives: Dict[int, List[Tuple[str, Top]]] = {}
        self._groups: Dict[InodeKey, List[str]] = {}
        self._links: Dict[InodeKey, int] = {}
        self._blocks: Dict[InodeKey, int] = {}
        self._redirect: Dict[InodeKey, InodeKey] = {}
        self._freed = set()

    def reconcile(self, paths: Iterable[Union[str, os.PathLike]]) -> ReconcileStats:
        """
        Walk every path (file or directory) and reconcile the files found.

        Args:
            paths: Files and directories to scan

        Returns:
            ReconcileStats: Totals accumulated by this instance so far

        Raises:
            CrossDeviceError: If duplicate candidates are on different devices
            MergeError: If a relink fails
        """
        for root in paths:
            root = os.fspath(root)
            logger.info(f"Scanning '{root}'")
            for path, st in walk_tree(root):
                self.add_file(path, st, top=_top_of(root, path))
        if self.options.progress_report:
            self._progress()
        return self.stats

    def add_file(self, path: Union[str, os.PathLike], st: Optional[os.stat_result] = None,
                 top: Optional[Top] = None) -> None:
        """
        Process one file.

        Args:
            path: File to process
            st: lstat result if already known
            top: Top-level subtree the file belongs to, defaults to the file itself
        """
        path = os.fspath(path)
        if top is None:
            top = (path, "")

        if EXCLUDE_PATTERN.search(path):
            self.stats.excluded += 1
            return
        try:
            ident = identify(path, st)
        except FileNotFoundError:
            logger.warning(f"File '{path}' vanished before it could be examined")
            return
        if not stat.S_ISREG(ident.mode):
            return
        if ident.size < self.options.size_floor:
            self.stats.too_small += 1
            return

        self.stats.files_scanned += 1
        if self.options.progress_report and self.stats.files_scanned % PROGRESS_INTERVAL == 0:
            self._progress()

        key = ident.key
        self._blocks.setdefault(key, ident.blocks)
        group_key = self._resolve(key)

        if group_key in self._groups:
            if group_key == key:
                self._groups[key].append(path)
            else:
                # This inode already lost a merge; move the straggler over as well
                self._links.setdefault(key, ident.nlink)
                survivor_path = self._groups[group_key][0]
                relinked = self._relink_paths([path], key, group_key, survivor_path)
                self._groups[group_key].extend(relinked)
                if relinked:
                    self._reconcile_attributes(survivor_path, identify(survivor_path), ident)
            return

        self._links[key] = ident.nlink
        representatives = self._representatives.setdefault(ident.size, [])
        for rep_path, rep_top in list(representatives):
            if not self._in_scope(rep_top, top):
                continue

            try:
                rep = identify(rep_path)
            except FileNotFoundError:
                self._evict(representatives, rep_path, rep_top)
                continue

            if rep.dev != ident.dev:
                raise CrossDeviceError(
                    f"Cannot link '{path}' (device {ident.dev}) to '{rep_path}' (device {rep.dev}): "
                    f"files are on different devices"
                )
            if rep.size != ident.size:
                continue
            if rep.key == key:
                self._groups[key] = [rep_path, path]
                logger.debug(f"'{path}' already shares its inode with '{rep_path}'")
                return

            self.stats.comparisons += 1
            try:
                same = self.comparator(rep_path, path)
            except FileNotFoundError:
                if not os.path.lexists(path):
                    logger.warning(f"File '{path}' vanished during comparison")
                    return
                self._evict(representatives, rep_path, rep_top)
                continue
            except OSError as e:
                logger.warning(f"Cannot compare '{path}' with '{rep_path}': {e}")
                continue

            if same:
                self._merge(rep_path, rep, path, ident)
                return

        representatives.append((path, top))
        self._groups[key] = [path]

    def _merge(self, rep_path: str, rep: FileIdentity, path: str, ident: FileIdentity) -> None:
        rep_key = self._resolve(rep.key)
        if rep_key not in self._groups:
            # The representative was replaced behind our back by another inode
            self._groups[rep_key] = [rep_path]
            self._links.setdefault(rep_key, rep.nlink)
            self._blocks.setdefault(rep_key, rep.blocks)

        # The side with more links survives; ties keep the earlier file
        if ident.nlink > self._links[rep_key]:
            survivor_key, survivor_path, survivor = ident.key, path, ident
            loser_key, loser_paths, loser = rep_key, self._groups.pop(rep_key), rep
            self._groups[survivor_key] = [path]
        else:
            survivor_key, survivor_path, survivor = rep_key, rep_path, rep
            loser_key, loser_paths, loser = ident.key, [path], ident

        logger.info(f"Merging '{loser_paths[0]}' into '{survivor_path}' ({len(loser_paths)} path(s))")
        relinked = self._relink_paths(loser_paths, loser_key, survivor_key, survivor_path)
        self._groups[survivor_key].extend(relinked)
        self._reconcile_attributes(survivor_path, survivor, loser)
        self.stats.merges += 1

    def _relink_paths(self, paths: List[str], loser_key: InodeKey, survivor_key: InodeKey,
                      survivor_path: str) -> List[str]:
        done = []
        for target in paths:
            try:
                current = os.lstat(target)
            except FileNotFoundError:
                logger.warning(f"'{target}' vanished, not relinking it")
                continue
            if not self.options.dry_run and (current.st_dev, current.st_ino) != loser_key:
                logger.warning(f"'{target}' changed since it was scanned, not relinking it")
                continue

            self._action(f"link {survivor_path} => {target}")
            if not self.options.dry_run:
                _replace_with_link(survivor_path, target)
            self._links[loser_key] -= 1
            self._links[survivor_key] = self._links.get(survivor_key, 1) + 1
            self.stats.relinked += 1
            done.append(target)

        self._redirect[loser_key] = survivor_key
        if self._links[loser_key] <= 0 and loser_key not in self._freed:
            self._freed.add(loser_key)
            saved = self._blocks.get(loser_key, 0) * 512
            self.stats.inodes_freed += 1
            self.stats.bytes_saved += saved
            logger.debug(f"Inode {loser_key[1]} released, {saved} bytes reclaimed")
        return done

    def _reconcile_attributes(self, path: str, survivor: FileIdentity, other: FileIdentity) -> None:
        if self.options.permission_merge == "union":
            mode = stat.S_IMODE(survivor.mode) | stat.S_IMODE(other.mode)
        elif other.mtime_ns > survivor.mtime_ns:
            mode = stat.S_IMODE(other.mode)
        else:
            mode = stat.S_IMODE(survivor.mode)
        atime_ns = max(survivor.atime_ns, other.atime_ns)
        mtime_ns = max(survivor.mtime_ns, other.mtime_ns)

        try:
            if mode != stat.S_IMODE(survivor.mode):
                self._action(f"chmod {mode:04o} {path}")
                if not self.options.dry_run:
                    os.chmod(path, mode)
            if (atime_ns, mtime_ns) != (survivor.atime_ns, survivor.mtime_ns):
                self._action(f"touch {path}")
                if not self.options.dry_run:
                    os.utime(path, ns=(atime_ns, mtime_ns))
        except OSError as e:
            raise MergeError(f"Cannot update attributes of '{path}': {e}") from e

    def _resolve(self, key: InodeKey) -> InodeKey:
        while key in self._redirect:
            key = self._redirect[key]
        return key

    def _in_scope(self, rep_top: Top, top: Top) -> bool:
        if self.options.scope == "same-top":
            return rep_top == top
        if self.options.scope == "different-top":
            return rep_top != top
        return True

    def _evict(self, representatives: List[Tuple[str, Top]], rep_path: str, rep_top: Top) -> None:
        logger.warning(f"Representative '{rep_path}' vanished, evicting it")
        representatives.remove((rep_path, rep_top))
        self.stats.evicted += 1

    def _action(self, message: str) -> None:
        if self.options.dry_run:
            message = "would " + message
        logger.debug(message)
        if self.options.action_report:
            print(message, file=self._out or sys.stdout)

    def _progress(self) -> None:
        s = self.stats
        print(
            f"Scanned {s.files_scanned} files, {s.merges} merges, {format_size(s.bytes_saved)} reclaimed",
            file=self._err or sys.stderr,
        )


def _top_of(root: str, path: str) -> Top:
    rel = os.path.relpath(path, root)
    if rel == os.curdir:
        return (root, "")
    return (root, rel.split(os.sep, 1)[0])


def _replace_with_link(source: str, target: str) -> None:
    """Atomically replace `target` with a hardlink to `source`."""
    temp = os.path.join(os.path.dirname(target), f"{LINK_TEMP_PREFIX}{uuid.uuid4().hex[:8]}")
    try:
        os.link(source, temp)
        os.replace(temp, target)
    except BaseException as e:
        try:
            os.unlink(temp)
        except FileNotFoundError:
            pass
        if isinstance(e, OSError):
            raise MergeError(f"Cannot relink '{target}' to '{source}': {e}") from e
        raise
