"""tcmerge conflict discovery — finds the sync-conflict copies of a store.

Syncthing keeps the losing side of a conflict next to the original as
`<stem>.sync-conflict-<YYYYMMDD>-<HHMMSS>-<DEVICE><suffix>`.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger("tcmerge.discovery")

CONFLICT_STAMP_FORMAT = "%Y%m%d-%H%M%S"
PRIMARY_DEVICE = "PRIMARY"


def conflict_pattern(primary: Path) -> re.Pattern:
    return re.compile(
        "^" + re.escape(primary.stem)
        + r"\.sync-conflict-(?P<stamp>\d{8}-\d{6})-(?P<device>[A-Z0-9]{7})"
        + re.escape(primary.suffix) + "$"
    )


@dataclass(frozen=True)
class ConflictCopy:
    path: Path
    timestamp: Optional[datetime] = None
    device_id: str = ""

    @property
    def replica_id(self) -> str:
        if self.timestamp is None:
            # not named by the convention: fall back to the file name
            return f"file-{self.path.name}"
        return f"{self.timestamp.strftime(CONFLICT_STAMP_FORMAT)}-{self.device_id}"


@dataclass
class Discovery:
    primary: Path
    primary_replica_id: str
    conflicts: list = field(default_factory=list)  # ConflictCopy, oldest first

    def __bool__(self) -> bool:
        return bool(self.conflicts)


def primary_replica_id(primary: Path) -> str:
    """Replica id of the primary: its mtime, so it sorts among the conflict copies."""
    try:
        mtime = datetime.fromtimestamp(primary.stat().st_mtime, tz=timezone.utc)
    except OSError:
        mtime = datetime.fromtimestamp(0, tz=timezone.utc)
    return f"{mtime.strftime(CONFLICT_STAMP_FORMAT)}-{PRIMARY_DEVICE}"


def parse_conflict_name(primary: Path, name: str):
    """ConflictCopy for `name` if it is a conflict copy of `primary`, else None."""
    m = conflict_pattern(primary).match(name)
    if not m:
        return None
    try:
        stamp = datetime.strptime(m.group("stamp"), CONFLICT_STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        logger.warning(f"Ignoring {name}: invalid conflict timestamp")
        return None
    return ConflictCopy(path=primary.parent / name, timestamp=stamp, device_id=m.group("device"))


def find_conflicts(primary) -> Discovery:
    primary = Path(primary)
    conflicts = []
    if primary.parent.is_dir():
        for entry in primary.parent.iterdir():
            if not entry.is_file():
                continue
            copy = parse_conflict_name(primary, entry.name)
            if copy is not None:
                conflicts.append(copy)
    conflicts.sort(key=lambda c: (c.timestamp, c.device_id))
    for c in conflicts:
        logger.debug(f"Conflict copy: {c.path.name} (device {c.device_id}, {c.timestamp.isoformat()})")
    return Discovery(primary=primary, primary_replica_id=primary_replica_id(primary), conflicts=conflicts)
