"""PID lock file preventing two processes from resuming the same experiment."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..errors import ResumeLockError

logger = logging.getLogger(__name__)


def pid_is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


class ResumeLock:
    """
    ``.resume_lock_<experiment_id>.pid`` in ``lock_dir``.

    A lock left behind by a dead process is removed; one held by a live
    process raises :class:`ResumeLockError`. Usable as a context manager.
    """

    def __init__(self, experiment_id: str, lock_dir: Union[str, Path],
                 log: Optional[logging.Logger] = None):
        self.experiment_id = experiment_id
        self.path = Path(lock_dir) / f".resume_lock_{experiment_id}.pid"
        self.logger = log or logger
        self.acquired = False

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip().splitlines()[0])
        except (OSError, ValueError, IndexError):
            return None

    def acquire(self) -> None:
        if self.path.exists():
            pid = self._read_pid()
            if pid is None:
                raise ResumeLockError(
                    f"Unreadable resume lock for experiment {self.experiment_id}: {self.path}"
                )
            if pid != os.getpid() and pid_is_running(pid):
                raise ResumeLockError(
                    f"Resume lock exists for experiment {self.experiment_id} (PID {pid}). "
                    f"If that process crashed, remove {self.path}"
                )
            self.logger.warning(f"Removing stale resume lock {self.path} (PID {pid} not running)")
            self.path.unlink()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise ResumeLockError(f"Resume lock for experiment {self.experiment_id} taken concurrently") from e
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True
        self.logger.info(f"Resume lock acquired for {self.experiment_id} (PID {os.getpid()})")

    def release(self) -> None:
        if self.acquired and self.path.exists():
            self.path.unlink()
            self.logger.info(f"Resume lock released for {self.experiment_id}")
        self.acquired = False

    def __enter__(self) -> "ResumeLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
