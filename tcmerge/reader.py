"""tcmerge storage reader — loads a TaskChampion SQLite store without touching it."""
import json
import logging
import sqlite3
from pathlib import Path

from .errors import CorruptStore, NotFound
from .schema import RawOperation, StoreSnapshot

logger = logging.getLogger("tcmerge.reader")

REQUIRED_COLUMNS = {
    "tasks": ("uuid", "data"),
    "operations": ("id", "data"),
}


def connect_readonly(path: Path) -> sqlite3.Connection:
    """Open `path` read-only. Plain sqlite3.connect() would create or modify it."""
    uri = f"{path.resolve().as_uri()}?mode=ro"
    conn = sqlite3.connect(uri, uri=True)
    conn.row_factory = sqlite3.Row
    return conn


class StoreReader:
    """Reads task rows, operation rows and the table layout of a store."""

    def read(self, path, replica_id: str) -> StoreSnapshot:
        path = Path(path)
        if not path.is_file():
            raise NotFound(f"{path}: no such task store")
        st = path.stat()

        try:
            conn = connect_readonly(path)
        except sqlite3.Error as e:
            raise CorruptStore(f"{path}: cannot open: {e}") from e
        try:
            schema = self._schema(conn, path)
            tasks = self._tasks(conn, path)
            operations = self._operations(conn, path, schema)
        except sqlite3.DatabaseError as e:
            raise CorruptStore(f"{path}: {e}") from e
        finally:
            conn.close()

        logger.debug(f"Read {path}: {len(tasks)} tasks, {len(operations)} operations")
        return StoreSnapshot(path=path, replica_id=replica_id, tasks=tasks,
                             operations=operations, schema=schema,
                             fingerprint=(st.st_mtime_ns, st.st_size))

    def _schema(self, conn: sqlite3.Connection, path: Path) -> tuple:
        names = [r["name"] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )]
        schema = []
        for name in names:
            cols = tuple(sorted(r["name"] for r in conn.execute(f'PRAGMA table_xinfo("{name}")')))
            schema.append((name, cols))

        found = dict(schema)
        for table, required in REQUIRED_COLUMNS.items():
            if table not in found:
                raise CorruptStore(f"{path}: not a task store (missing table '{table}')")
            missing = [c for c in required if c not in found[table]]
            if missing:
                raise CorruptStore(f"{path}: table '{table}' lacks column(s) {', '.join(missing)}")
        return tuple(schema)

    def _tasks(self, conn: sqlite3.Connection, path: Path) -> dict:
        tasks = {}
        for row in conn.execute("SELECT uuid, data FROM tasks ORDER BY uuid"):
            try:
                data = json.loads(row["data"]) if row["data"] else {}
            except json.JSONDecodeError as e:
                raise CorruptStore(f"{path}: task {row['uuid']} has invalid data: {e}") from e
            if not isinstance(data, dict):
                raise CorruptStore(f"{path}: task {row['uuid']} data is not an object")
            bad = [k for k, v in data.items() if not isinstance(v, str)]
            if bad:
                raise CorruptStore(f"{path}: task {row['uuid']} has non-string value(s) for {', '.join(bad)}")
            tasks[str(row["uuid"])] = data
        return tasks

    def _operations(self, conn: sqlite3.Connection, path: Path, schema: tuple) -> list[RawOperation]:
        has_synced = "synced" in dict(schema)["operations"]
        query = "SELECT id, data, synced FROM operations ORDER BY id" if has_synced \
            else "SELECT id, data FROM operations ORDER BY id"
        ops = []
        for row in conn.execute(query):
            try:
                payload = json.loads(row["data"])
            except (json.JSONDecodeError, TypeError) as e:
                raise CorruptStore(f"{path}: operation #{row['id']} has invalid data: {e}") from e
            synced = bool(row["synced"]) if has_synced else False
            ops.append(RawOperation(id=int(row["id"]), payload=payload, synced=synced))
        return ops
