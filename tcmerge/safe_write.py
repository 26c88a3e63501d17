"""tcmerge safe write layer — snapshot every input store before a merge touches it."""
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger("tcmerge.safe_write")

SNAPSHOT_FORMAT = "%Y-%m-%d_%H-%M-%S"
DEFAULT_KEEP = 100


class SafeWriter:
    """Keeps copies of merged stores in timestamped directories under `state_dir`."""

    def __init__(self, state_dir, keep: int = DEFAULT_KEEP):
        self.state_dir = Path(state_dir)
        self.keep = keep

    def snapshot(self, paths, now: Optional[datetime] = None) -> Path:
        """Copy `paths` into a new snapshot directory. Returns its path."""
        now = now or datetime.now(timezone.utc)
        backup_path = self.state_dir / now.strftime(SNAPSHOT_FORMAT)
        n = 1
        while backup_path.exists():
            backup_path = self.state_dir / f"{now.strftime(SNAPSHOT_FORMAT)}.{n}"
            n += 1
        backup_path.mkdir(parents=True)

        for item in paths:
            item = Path(item)
            shutil.copy2(item, backup_path / item.name)
            for sidecar in ("-wal", "-shm"):
                extra = item.with_name(item.name + sidecar)
                if extra.exists():
                    shutil.copy2(extra, backup_path / extra.name)
        logger.info(f"Backed up {len(paths)} store(s) to {backup_path}")
        return backup_path

    def snapshots(self) -> list[tuple[datetime, Path]]:
        if not self.state_dir.is_dir():
            return []
        found = []
        for d in self.state_dir.iterdir():
            if not d.is_dir():
                continue
            try:
                ts = datetime.strptime(d.name.split(".")[0], SNAPSHOT_FORMAT)
            except ValueError:
                continue
            found.append((ts, d))
        found.sort()
        return found

    def prune(self, keep: Optional[int] = None) -> list[Path]:
        """Keep only the N most recent snapshots."""
        keep = self.keep if keep is None else keep
        snaps = self.snapshots()
        removed = []
        for _, old in snaps[:max(len(snaps) - keep, 0)]:
            shutil.rmtree(old)
            removed.append(old)
            logger.debug(f"Pruned old snapshot {old.name}")
        return removed
