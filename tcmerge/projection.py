"""tcmerge task projection — current task state by replaying an operation log.

Replay runs in global order (timestamp, replica, sequence):

- Create: makes an unseen task present with no fields.
- Update: sets (or, with a null value, unsets) one field of a present task.
- Delete: removes the task and leaves a tombstone.

A Delete is terminal. Updates that land on a tombstone are reported as
anomalies and not applied, even when their timestamp is later. Only a Create
that follows the Delete in time brings the task back: a strictly later
timestamp, or a later entry of the replica that deleted it. Any other Create
is reported and ignored. An Update for a task no entry ever created is
applied (the task is materialized) and reported.
"""
import json
from dataclasses import dataclass, field

from .schema import CREATE, DELETE, UPDATE, Operation

UPDATE_AFTER_DELETE = "update_after_delete"
UPDATE_WITHOUT_CREATE = "update_without_create"
CREATE_NOT_AFTER_DELETE = "create_not_after_delete"


@dataclass(frozen=True)
class Anomaly:
    kind: str
    task_id: str
    operation: Operation

    def describe(self) -> str:
        return f"{self.kind}: {self.operation.describe()}"


@dataclass
class Projection:
    tasks: dict = field(default_factory=dict)  # task_id -> {field: value}
    anomalies: list = field(default_factory=list)
    # task_id -> {field: Operation that last set it}
    setters: dict = field(default_factory=dict)

    def to_json(self) -> str:
        """Canonical serialization: equal projections give equal strings."""
        return json.dumps(self.tasks, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def __contains__(self, task_id) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)


def _follows(op: Operation, delete: Operation) -> bool:
    if op.timestamp != delete.timestamp:
        return op.timestamp > delete.timestamp
    return op.replica_id == delete.replica_id and op.sequence > delete.sequence


def project(operations) -> Projection:
    live: dict[str, dict] = {}
    setters: dict[str, dict] = {}
    tombstoned: dict[str, Operation] = {}  # task_id -> its Delete
    anomalies = []

    for op in sorted(operations, key=Operation.order_key):
        tid = op.task_id
        if op.kind == CREATE:
            if tid in live:
                continue
            if tid in tombstoned and not _follows(op, tombstoned[tid]):
                anomalies.append(Anomaly(CREATE_NOT_AFTER_DELETE, tid, op))
                continue
            live[tid] = {}
            setters[tid] = {}
            tombstoned.pop(tid, None)
        elif op.kind == DELETE:
            if tid in live:
                del live[tid]
                del setters[tid]
            tombstoned[tid] = op
        elif op.kind == UPDATE:
            if tid not in live:
                if tid in tombstoned:
                    anomalies.append(Anomaly(UPDATE_AFTER_DELETE, tid, op))
                    continue
                anomalies.append(Anomaly(UPDATE_WITHOUT_CREATE, tid, op))
                live[tid] = {}
                setters[tid] = {}
            if op.value is None:
                live[tid].pop(op.field, None)
            else:
                live[tid][op.field] = op.value
            setters[tid][op.field] = op

    tasks = {tid: dict(sorted(live[tid].items())) for tid in sorted(live)}
    return Projection(tasks=tasks, anomalies=anomalies,
                      setters={tid: setters[tid] for tid in tasks})
