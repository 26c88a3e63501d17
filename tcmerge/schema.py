"""tcmerge records — operation log entries and store snapshots."""
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


CREATE = "create"
UPDATE = "update"
DELETE = "delete"
OPERATION_KINDS = (CREATE, UPDATE, DELETE)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Operation:
    """One mutation of one task.

    `raw`, `synced` and `synthetic` ride along for the writer; they take no
    part in equality, identity or ordering.
    """
    task_id: str
    kind: str  # one of OPERATION_KINDS
    timestamp: datetime
    replica_id: str
    sequence: int
    field: Optional[str] = None
    value: Optional[str] = None
    old_value: Optional[str] = None
    raw: str = dataclasses.field(default="", compare=False, repr=False)
    synced: bool = dataclasses.field(default=False, compare=False)
    synthetic: bool = dataclasses.field(default=False, compare=False)

    def identity(self) -> tuple:
        """Key under which copies of the same operation collapse to one."""
        return (self.task_id, self.kind, self.field, self.value, self.timestamp)

    def order_key(self) -> tuple:
        return (self.timestamp, self.replica_id, self.sequence)

    def describe(self) -> str:
        where = f"{self.replica_id}#{self.sequence}"
        if self.kind == UPDATE:
            return f"{self.kind} {self.task_id} {self.field}={self.value!r} @ {self.timestamp.isoformat()} ({where})"
        return f"{self.kind} {self.task_id} @ {self.timestamp.isoformat()} ({where})"


@dataclass
class RawOperation:
    """A row of the operations table with its JSON payload decoded."""
    id: int
    payload: object
    synced: bool = False


@dataclass
class StoreSnapshot:
    """Everything read from one store file."""
    path: Path
    replica_id: str
    tasks: dict = dataclasses.field(default_factory=dict)  # uuid -> {property: value}
    operations: list = dataclasses.field(default_factory=list)  # RawOperation, by id
    schema: tuple = ()
    fingerprint: Optional[tuple] = None  # (st_mtime_ns, st_size) when read

    @property
    def name(self) -> str:
        return self.path.name
