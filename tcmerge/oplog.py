"""tcmerge operation log — one replica's mutations as ordered Operation entries.

Only Update payloads carry a timestamp. Create and Delete entries get one
derived from their neighbours in the same log, so that two replicas sharing
history derive the same value for the same entry:

- Create takes the timestamp of the next Update of the same task, falling
  back to the previous entry, then the next timestamped entry, then epoch.
- Delete takes the later of the previous entry and `old_task.modified`.
"""
import json
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from .errors import CorruptStore
from .projection import project
from .schema import CREATE, DELETE, EPOCH, UPDATE, Operation, StoreSnapshot

_PAYLOAD_KINDS = {"Create": CREATE, "Update": UPDATE, "Delete": DELETE}
_MARKERS = ("UndoPoint",)

_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:?\d{2})?$"
)


def parse_timestamp(value) -> Optional[datetime]:
    """RFC 3339 (any fractional precision) or Unix epoch seconds, as aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if isinstance(value, (int, float)) or text.isdigit():
        try:
            return datetime.fromtimestamp(int(value if not isinstance(value, str) else text), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            # not representable as a datetime
            return None
    m = _RFC3339.match(text)
    if not m:
        return None
    date, clock, frac, tz = m.groups()
    iso = f"{date}T{clock}"
    if frac:
        iso += "." + frac[:6].ljust(6, "0")
    if tz is None or tz in ("Z", "z"):
        tz = "+00:00"
    elif ":" not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    try:
        return datetime.fromisoformat(iso + tz).astimezone(timezone.utc)
    except ValueError:
        return None


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def decode_payload(payload, where: str) -> Optional[tuple[str, dict]]:
    """Return (kind, body) for a mutation payload, None for markers."""
    if isinstance(payload, str) and payload in _MARKERS:
        return None
    if not isinstance(payload, dict) or len(payload) != 1:
        raise CorruptStore(f"{where}: unrecognised operation {payload!r}")
    (tag, body), = payload.items()
    if tag in _MARKERS:
        return None
    if tag not in _PAYLOAD_KINDS or not isinstance(body, dict) or "uuid" not in body:
        raise CorruptStore(f"{where}: unrecognised operation {payload!r}")
    return _PAYLOAD_KINDS[tag], body


def encode_operation(op: Operation) -> str:
    if op.kind == CREATE:
        payload = {"Create": {"uuid": op.task_id}}
    elif op.kind == DELETE:
        payload = {"Delete": {"uuid": op.task_id, "old_task": {}}}
    else:
        payload = {"Update": {
            "uuid": op.task_id,
            "property": op.field,
            "old_value": op.old_value,
            "value": op.value,
            "timestamp": format_timestamp(op.timestamp),
        }}
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _task_timestamp(data: dict) -> datetime:
    for key in ("modified", "entry"):
        ts = parse_timestamp(data.get(key))
        if ts is not None:
            return ts
    return EPOCH


class OperationLog:
    """Entries of one replica, ordered by (timestamp, sequence)."""

    def __init__(self, replica_id: str, entries=(), schema: tuple = (), source=None):
        self.replica_id = replica_id
        self.entries = sorted(entries, key=lambda op: (op.timestamp, op.sequence))
        self.schema = schema
        self.source = source

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot, lift_baseline: bool = True) -> "OperationLog":
        entries = _log_entries(snapshot)
        if lift_baseline:
            entries += _baseline_entries(snapshot, entries)
        return cls(snapshot.replica_id, entries, schema=snapshot.schema, source=snapshot.path)

    @property
    def label(self) -> str:
        return str(self.source) if self.source is not None else self.replica_id

    def task_ids(self) -> set:
        return {op.task_id for op in self.entries}

    def for_task(self, task_id: str) -> list[Operation]:
        return [op for op in self.entries if op.task_id == task_id]

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"OperationLog({self.label!r}, {len(self.entries)} entries)"


def _log_entries(snapshot: StoreSnapshot) -> list[Operation]:
    decoded = []
    for raw in snapshot.operations:
        where = f"{snapshot.path}: operation #{raw.id}"
        parsed = decode_payload(raw.payload, where)
        if parsed is not None:
            decoded.append((raw, where) + parsed)

    explicit = []
    for raw, where, kind, body in decoded:
        if kind != UPDATE:
            explicit.append(None)
            continue
        ts = parse_timestamp(body.get("timestamp"))
        if ts is None:
            raise CorruptStore(f"{where}: bad timestamp {body.get('timestamp')!r}")
        explicit.append(ts)

    # backward pass: next timestamped entry, next Update per task
    next_explicit = [None] * len(decoded)
    create_hint = [None] * len(decoded)
    upcoming = None
    next_update: dict[str, datetime] = {}
    for i in range(len(decoded) - 1, -1, -1):
        _, _, kind, body = decoded[i]
        next_explicit[i] = upcoming
        if kind == CREATE:
            create_hint[i] = next_update.get(str(body["uuid"]))
        elif kind == UPDATE:
            next_update[str(body["uuid"])] = explicit[i]
            upcoming = explicit[i]

    entries = []
    carried = None
    for i, (raw, where, kind, body) in enumerate(decoded):
        if kind == UPDATE:
            ts = explicit[i]
        elif kind == CREATE:
            ts = create_hint[i] or carried or next_explicit[i] or EPOCH
        else:
            old_task = body.get("old_task") if isinstance(body.get("old_task"), dict) else {}
            known = [t for t in (carried, parse_timestamp(old_task.get("modified"))) if t is not None]
            ts = max(known) if known else (next_explicit[i] or EPOCH)
        carried = ts

        field = value = old_value = None
        if kind == UPDATE:
            field = body.get("property")
            if not isinstance(field, str) or not field:
                raise CorruptStore(f"{where}: update without a property name")
            value = body.get("value")
            old_value = body.get("old_value")
            for v in (value, old_value):
                if v is not None and not isinstance(v, str):
                    raise CorruptStore(f"{where}: non-string value {v!r}")
        entries.append(Operation(
            task_id=str(body["uuid"]), kind=kind, timestamp=ts,
            replica_id=snapshot.replica_id, sequence=raw.id,
            field=field, value=value, old_value=old_value,
            raw=json.dumps(raw.payload, separators=(",", ":"), ensure_ascii=False),
            synced=raw.synced,
        ))
    return entries


def _baseline_entries(snapshot: StoreSnapshot, entries: list[Operation]) -> list[Operation]:
    """Synthetic entries for task-table state the log does not explain."""
    replayed = project(entries).tasks
    pending = []
    for task_id, data in sorted(snapshot.tasks.items()):
        ts = _task_timestamp(data)
        current = replayed.get(task_id)
        if current is None:
            pending.append(dict(task_id=task_id, kind=CREATE, timestamp=ts))
            current = {}
        for prop in sorted(data):
            if current.get(prop) != data[prop]:
                pending.append(dict(task_id=task_id, kind=UPDATE, timestamp=ts, field=prop,
                                    value=data[prop], old_value=current.get(prop)))

    lifted = []
    for n, spec in enumerate(pending):
        op = Operation(replica_id=snapshot.replica_id, sequence=n - len(pending),
                       synced=True, synthetic=True, **spec)
        lifted.append(replace(op, raw=encode_operation(op)))
    return lifted
