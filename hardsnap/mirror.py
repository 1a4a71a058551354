import shlex
import logging
import subprocess
from pathlib import Path
from typing import List, Sequence, Union


logger = logging.getLogger('hardsnap')


class TreeMirror:
    """Refreshes a local directory from some source. Subclasses do the transfer."""

    def refresh(self, destination: Union[str, Path]) -> None:
        raise NotImplementedError


class RsyncMirror(TreeMirror):
    """Mirrors a (possibly remote) source with rsync over a remote shell."""

    def __init__(self, source: str, ssh_command: str = "ssh", extra_args: Sequence[str] = (),
                 rsync: str = "rsync"):
        """
        Args:
            source: rsync source, e.g. ``host:/srv/data`` or a local directory
            ssh_command: Remote shell command line handed to ``rsync -e``
            extra_args: Additional rsync arguments, passed through unchanged
            rsync: rsync executable
        """
        if not source:
            raise ValueError("Mirror source cannot be empty")
        self.source = source
        self.ssh_command = ssh_command
        self.extra_args = list(extra_args)
        self.rsync = rsync

    def command(self, destination: Union[str, Path]) -> List[str]:
        """Argument vector used to refresh `destination`."""
        return [
            self.rsync,
            "--archive",
            "--hard-links",
            "--delete",
            "--numeric-ids",
            "--rsh", self.ssh_command,
            *self.extra_args,
            self.source.rstrip("/") + "/",
            str(destination).rstrip("/") + "/",
        ]

    def refresh(self, destination: Union[str, Path]) -> None:
        """
        Bring `destination` in line with the source.

        Raises:
            RuntimeError: If rsync cannot be started or exits with an error
        """
        Path(destination).mkdir(parents=True, exist_ok=True)
        cmd = self.command(destination)
        logger.info(f"Mirroring: {shlex.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise RuntimeError(f"Cannot run {self.rsync}: {e}") from e

        if result.returncode != 0:
            tail = result.stderr.strip().splitlines()[-5:]
            raise RuntimeError(
                f"{self.rsync} exited with status {result.returncode}: {' | '.join(tail) or 'no output'}"
            )
        logger.info(f"Mirror of '{self.source}' into '{destination}' completed")
