"""tcmerge — main orchestrator: discover, read, merge, project, back up, write, clean up."""
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import MergeConfig
from .discovery import ConflictCopy, Discovery, find_conflicts, parse_conflict_name, primary_replica_id
from .errors import NotFound, WriteFailure
from .lock import merge_lock
from .merger import MergeEngine
from .oplog import OperationLog
from .projection import project
from .reader import StoreReader
from .safe_write import DEFAULT_KEEP, SafeWriter
from .writer import StoreWriter

logger = logging.getLogger("tcmerge")


@dataclass
class MergeReport:
    primary: Path
    merged: bool = False
    dry_run: bool = False
    operations: int = 0
    duplicates: int = 0
    tasks: int = 0
    conflicts: list = field(default_factory=list)  # FieldConflict
    anomalies: list = field(default_factory=list)  # Anomaly
    consumed: dict = field(default_factory=dict)  # conflict copy path -> merged and removed
    backup: Optional[Path] = None

    @property
    def removed(self) -> list[Path]:
        return [p for p, ok in self.consumed.items() if ok]

    def to_dict(self) -> dict:
        return {
            "primary": str(self.primary),
            "merged": self.merged,
            "dry_run": self.dry_run,
            "operations": self.operations,
            "duplicates": self.duplicates,
            "tasks": self.tasks,
            "field_conflicts": [c.describe() for c in self.conflicts],
            "anomalies": [a.describe() for a in self.anomalies],
            "consumed": {str(p): ok for p, ok in self.consumed.items()},
            "backup": str(self.backup) if self.backup else None,
        }


def _as_copy(primary: Path, item) -> ConflictCopy:
    if isinstance(item, ConflictCopy):
        return item
    path = Path(item)
    parsed = parse_conflict_name(primary, path.name)
    if parsed is not None:
        return ConflictCopy(path=path, timestamp=parsed.timestamp, device_id=parsed.device_id)
    return ConflictCopy(path=path)


def merge_files(primary, conflicts, state_dir, keep: int = DEFAULT_KEEP, dry_run: bool = False,
                primary_replica: Optional[str] = None,
                reader: Optional[StoreReader] = None,
                engine: Optional[MergeEngine] = None,
                writer: Optional[StoreWriter] = None,
                safe_writer: Optional[SafeWriter] = None) -> MergeReport:
    """Merge `conflicts` into `primary` and remove the copies that were merged.

    Nothing on disk changes unless every input was read and merged; the
    primary is replaced by one atomic rename. A dry run takes no lock and
    leaves `state_dir` alone.
    """
    primary = Path(primary)
    reader = reader or StoreReader()
    engine = engine or MergeEngine()
    writer = writer or StoreWriter()
    safe_writer = safe_writer or SafeWriter(state_dir, keep=keep)
    copies = [_as_copy(primary, c) for c in conflicts]
    report = MergeReport(primary=primary, dry_run=dry_run)

    with nullcontext() if dry_run else merge_lock(primary, state_dir):
        snapshots = [reader.read(primary, primary_replica or primary_replica_id(primary))]
        used = []
        for copy in copies:
            try:
                snapshots.append(reader.read(copy.path, copy.replica_id))
            except NotFound as e:
                logger.warning(f"Skipping conflict copy: {e}")
                report.consumed[copy.path] = False
                continue
            used.append(copy)

        logs = [OperationLog.from_snapshot(s) for s in snapshots]
        result = engine.merge(logs)
        projection = project(result.operations)
        for anomaly in projection.anomalies:
            logger.warning(f"Anomaly in merged log: {anomaly.describe()}")

        report.operations = len(result.operations)
        report.duplicates = result.duplicates
        report.tasks = len(projection)
        report.conflicts = result.conflicts
        report.anomalies = projection.anomalies

        if dry_run:
            for copy in used:
                report.consumed[copy.path] = False
            logger.info(f"Dry run: would merge {len(used)} conflict copies into {primary}")
            return report

        try:
            report.backup = safe_writer.snapshot([primary] + [c.path for c in used])
        except OSError as e:
            raise WriteFailure(f"{primary}: cannot back up inputs to {state_dir}: {e}") from e
        writer.write(primary, result, projection, fingerprint=snapshots[0].fingerprint)
        report.merged = True

        for copy in used:
            try:
                copy.path.unlink()
                report.consumed[copy.path] = True
                logger.info(f"Removed merged conflict copy {copy.path.name}")
            except OSError as e:
                logger.warning(f"Merged but could not remove {copy.path}: {e}")
                report.consumed[copy.path] = False
    return report


class TaskMerge:
    """Conflict-copy merger for one task directory.

    Usage:
        tm = TaskMerge()  # auto-discovers config
        report = tm.run()
        report.removed  # conflict copies merged and deleted
    """

    def __init__(self, task_dir: Optional[str] = None,
                 config_path: Optional[str] = None,
                 dry_run: bool = False,
                 **kwargs):
        overrides = {}
        if task_dir is not None:
            overrides["task_dir"] = str(task_dir)
        overrides.update(kwargs)
        self.config = MergeConfig(config_path=config_path, **overrides)
        self.dry_run = dry_run

        self.reader = StoreReader()
        self.engine = MergeEngine()
        self.writer = StoreWriter()
        self.safe_writer = SafeWriter(self.config.state_dir, keep=self.config.keep)

    def discover(self) -> Discovery:
        return find_conflicts(self.config.primary_path)

    def run(self) -> MergeReport:
        discovery = self.discover()
        if not discovery:
            logger.info(f"No conflict copies of {discovery.primary}")
            report = MergeReport(primary=discovery.primary, dry_run=self.dry_run)
        else:
            logger.info(f"Found {len(discovery.conflicts)} conflict copies of {discovery.primary}")
            report = merge_files(
                discovery.primary, discovery.conflicts, self.config.state_dir,
                dry_run=self.dry_run,
                primary_replica=discovery.primary_replica_id,
                reader=self.reader, engine=self.engine,
                writer=self.writer, safe_writer=self.safe_writer,
            )
        if not self.dry_run:
            try:
                self.safe_writer.prune()
            except OSError as e:
                logger.warning(f"Could not prune history in {self.config.state_dir}: {e}")
        return report
