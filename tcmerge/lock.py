"""tcmerge merge lock — one merge per primary store at a time."""
import fcntl
import hashlib
import logging
import os
from contextlib import contextmanager
from pathlib import Path

from .errors import ConcurrentMergeDetected, WriteFailure

logger = logging.getLogger("tcmerge.lock")


def lock_path(primary: Path, lock_dir: Path) -> Path:
    key = hashlib.sha256(str(Path(primary).expanduser().resolve()).encode()).hexdigest()[:16]
    return Path(lock_dir) / f"{Path(primary).name}.{key}.lock"


@contextmanager
def merge_lock(primary, lock_dir):
    """Exclusive advisory lock for merging into `primary`.

    Does not wait: if another process holds it, ConcurrentMergeDetected.
    The lock file lives in `lock_dir`, outside the synchronized folder.
    """
    path = lock_path(primary, lock_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o600)
    except OSError as e:
        raise WriteFailure(f"{primary}: cannot create merge lock {path}: {e}") from e
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise ConcurrentMergeDetected(
                f"{primary}: another merge is running (lock {path}); retry later"
            ) from None
        logger.debug(f"Acquired {path}")
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
