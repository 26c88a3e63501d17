"""tcmerge storage writer — replaces the primary store with the merged one, atomically.

The primary is cloned into a temporary file next to it with the SQLite backup
API, the clone's operations and tasks are rewritten, and the clone is renamed
over the primary. Until that rename nothing the primary's readers can see has
changed.
"""
import json
import logging
import os
import shutil
import sqlite3
import tempfile
from pathlib import Path
from typing import Optional

from .errors import WriteFailure
from .merger import MergeResult
from .oplog import encode_operation
from .projection import Projection
from .reader import connect_readonly

logger = logging.getLogger("tcmerge.writer")


def _columns(conn: sqlite3.Connection, table: str) -> list[str]:
    # table_info leaves out generated columns, which cannot be inserted into
    return [r[1] for r in conn.execute(f'PRAGMA table_info("{table}")')]


def _has_table(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)).fetchone()
    return row is not None


class StoreWriter:
    def write(self, primary, result: MergeResult, projection: Projection,
              fingerprint: Optional[tuple] = None) -> Path:
        """Replace `primary` with the merged store.

        `fingerprint` is the primary's (st_mtime_ns, st_size) when it was read;
        if the file has changed since, nothing is written.
        """
        primary = Path(primary)
        self._check_unchanged(primary, fingerprint)
        wal = primary.with_name(primary.name + "-wal")
        if wal.exists() and wal.stat().st_size > 0:
            raise WriteFailure(f"{primary}: store is open elsewhere ({wal.name} present); "
                               f"close taskwarrior and retry")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{primary.name}.", suffix=".tmp", dir=primary.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            self._build(primary, tmp, result, projection)
            self._check_unchanged(primary, fingerprint)
            shutil.copymode(primary, tmp)
            os.replace(tmp, primary)
        except (sqlite3.Error, OSError) as e:
            tmp.unlink(missing_ok=True)
            raise WriteFailure(f"{primary}: could not write merged store: {e}") from e
        except WriteFailure:
            tmp.unlink(missing_ok=True)
            raise

        logger.info(f"Wrote {primary}: {len(result.operations)} operations, {len(projection)} tasks")
        return primary

    def _check_unchanged(self, primary: Path, fingerprint: Optional[tuple]):
        if fingerprint is None:
            return
        try:
            st = primary.stat()
        except OSError as e:
            raise WriteFailure(f"{primary}: store vanished while merging: {e}") from e
        if (st.st_mtime_ns, st.st_size) != tuple(fingerprint):
            raise WriteFailure(f"{primary}: store changed while merging; run again")

    def _build(self, primary: Path, tmp: Path, result: MergeResult, projection: Projection):
        src = connect_readonly(primary)
        dst = sqlite3.connect(str(tmp))
        try:
            src.backup(dst)
            dst.execute("PRAGMA journal_mode=DELETE")
            with dst:
                self._write_operations(dst, result)
                self._write_tasks(dst, projection)
                self._prune_working_set(dst, projection)
        finally:
            src.close()
            dst.close()

    def _write_operations(self, conn: sqlite3.Connection, result: MergeResult):
        conn.execute("DELETE FROM operations")
        with_synced = "synced" in _columns(conn, "operations")
        for op in result.operations:
            data = op.raw or encode_operation(op)
            if with_synced:
                conn.execute("INSERT INTO operations (data, synced) VALUES (?, ?)", (data, op.synced))
            else:
                conn.execute("INSERT INTO operations (data) VALUES (?)", (data,))

    def _write_tasks(self, conn: sqlite3.Connection, projection: Projection):
        conn.execute("DELETE FROM tasks")
        conn.executemany(
            "INSERT INTO tasks (uuid, data) VALUES (?, ?)",
            [(tid, json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
             for tid, data in projection.tasks.items()],
        )

    def _prune_working_set(self, conn: sqlite3.Connection, projection: Projection):
        if not _has_table(conn, "working_set"):
            return
        stale = [row[0] for row in conn.execute("SELECT id, uuid FROM working_set")
                 if row[1] is not None and row[1] not in projection]
        conn.executemany("DELETE FROM working_set WHERE id = ?", [(i,) for i in stale])
        if stale:
            logger.debug(f"Dropped {len(stale)} working set entries for removed tasks")
