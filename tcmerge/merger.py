"""tcmerge merge engine — union of per-replica operation logs.

Strategy:
- Same operation in several logs (same task, kind, field, value, timestamp):
  kept once, survivor is the copy with the smallest (replica_id, sequence)
- Everything else: kept, ordered by (timestamp, replica_id, sequence)
- Same field set to different values by different replicas: all updates stay
  in the log, the latest one wins in projection and the clash is reported
"""
import logging
import uuid
from dataclasses import dataclass, field, replace

from .errors import EmptyInput, IncompatibleSchema
from .oplog import OperationLog
from .schema import UPDATE, Operation

logger = logging.getLogger("tcmerge.merger")


@dataclass(frozen=True)
class FieldConflict:
    task_id: str
    field: str
    winner: Operation
    losers: tuple

    def describe(self) -> str:
        beaten = ", ".join(f"{op.value!r} ({op.replica_id})" for op in self.losers)
        return (f"{self.task_id} {self.field}: {self.winner.value!r} ({self.winner.replica_id}) "
                f"wins over {beaten}")


@dataclass
class MergeResult:
    operations: list = field(default_factory=list)
    duplicates: int = 0
    per_replica: dict = field(default_factory=dict)  # replica_id -> entries contributed
    conflicts: list = field(default_factory=list)
    replicas: list = field(default_factory=list)  # replica ids, primary first

    @property
    def primary(self) -> str:
        return self.replicas[0]

    def __len__(self) -> int:
        return len(self.operations)


class MergeEngine:
    """Merges N operation logs of one logical store. The first log is the primary."""

    def merge(self, logs: list[OperationLog]) -> MergeResult:
        if not logs:
            raise EmptyInput("no operation logs to merge")
        primary = logs[0]
        for log in logs:
            self._validate(log, primary)

        survivors: dict[tuple, Operation] = {}
        in_primary = {op.identity(): op.synced for op in primary}
        per_replica = {}
        total = 0
        for log in logs:
            per_replica[log.replica_id] = len(log)
            for op in log:
                total += 1
                key = op.identity()
                kept = survivors.get(key)
                if kept is None or (op.replica_id, op.sequence) < (kept.replica_id, kept.sequence):
                    survivors[key] = op

        operations = []
        for key, op in survivors.items():
            synced = in_primary.get(key, False)
            if op.synced != synced:
                op = replace(op, synced=synced)
            operations.append(op)
        operations.sort(key=Operation.order_key)

        result = MergeResult(
            operations=operations,
            duplicates=total - len(operations),
            per_replica=per_replica,
            conflicts=self._field_conflicts(operations),
            replicas=[log.replica_id for log in logs],
        )
        logger.info(f"Merged {len(logs)} logs: {total} entries, {result.duplicates} duplicates, "
                    f"{len(operations)} kept, {len(result.conflicts)} field conflicts")
        for conflict in result.conflicts:
            logger.info(f"Field conflict: {conflict.describe()}")
        return result

    def _validate(self, log: OperationLog, primary: OperationLog):
        if log is not primary and log.schema and primary.schema and log.schema != primary.schema:
            theirs = {t: c for t, c in log.schema}
            ours = {t: c for t, c in primary.schema}
            diff = sorted(t for t in set(theirs) | set(ours) if theirs.get(t) != ours.get(t))
            raise IncompatibleSchema(
                f"{log.label}: schema differs from {primary.label} in table(s) {', '.join(diff)}"
            )
        for op in log:
            try:
                uuid.UUID(op.task_id)
            except ValueError:
                raise IncompatibleSchema(
                    f"{log.label}: entry #{op.sequence} names task {op.task_id!r}, not a UUID"
                ) from None
            if op.kind == UPDATE and (not isinstance(op.field, str) or not op.field):
                raise IncompatibleSchema(
                    f"{log.label}: entry #{op.sequence} updates task {op.task_id} "
                    f"with invalid field name {op.field!r}"
                )

    def _field_conflicts(self, operations: list[Operation]) -> list[FieldConflict]:
        by_field: dict[tuple, list[Operation]] = {}
        for op in operations:
            if op.kind == UPDATE:
                by_field.setdefault((op.task_id, op.field), []).append(op)

        conflicts = []
        for (task_id, name), updates in sorted(by_field.items()):
            if len({op.replica_id for op in updates}) < 2 or len({op.value for op in updates}) < 2:
                continue
            winner = updates[-1]
            losers = tuple(op for op in updates[:-1] if op.value != winner.value)
            if losers:
                conflicts.append(FieldConflict(task_id, name, winner, losers))
        return conflicts
