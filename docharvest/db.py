"""SQLite run state: work units per stage, their lifecycle, and listing checkpoints."""

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import StateError, StateErrorKind
from .models import PaginationCursor, Stage, UnitStatus, WorkUnit


class RunStateStore:
    """Sole owner of WorkUnit state.

    Every transition runs in its own `BEGIN IMMEDIATE` transaction and is
    committed before the method returns. A unit only leaves `in_flight`
    through mark_done, mark_failed or release; a crash in between leaves it
    `in_flight`, and reconcile() puts it back to `pending` on the next start.
    """

    def __init__(self, db_path: str = "harvest.db", max_attempts: int = 3):
        self.db_path = db_path
        self.max_attempts = max_attempts
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._init_db()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            self._local.conn = conn
        return self._local.conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        with self._write_lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _init_db(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS work_units (
                stage TEXT NOT NULL,
                id TEXT NOT NULL,
                source_url TEXT NOT NULL,
                method TEXT DEFAULT 'GET',
                form TEXT,
                parent_id TEXT,
                meta TEXT DEFAULT '{}',
                status TEXT DEFAULT 'pending',
                attempts INTEGER DEFAULT 0,
                payload TEXT,
                sha256 TEXT,
                last_error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (stage, id)
            );

            CREATE INDEX IF NOT EXISTS idx_units_status ON work_units(stage, status);
            CREATE INDEX IF NOT EXISTS idx_units_sha256 ON work_units(sha256);

            CREATE TABLE IF NOT EXISTS cursors (
                unit_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
        """)

    @staticmethod
    def _to_unit(row: sqlite3.Row) -> WorkUnit:
        return WorkUnit(
            id=row["id"],
            stage=Stage(row["stage"]),
            source_url=row["source_url"],
            status=UnitStatus(row["status"]),
            attempts=row["attempts"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            method=row["method"],
            form=json.loads(row["form"]) if row["form"] else None,
            parent_id=row["parent_id"],
            meta=json.loads(row["meta"] or "{}"),
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )

    def _status_of(self, conn: sqlite3.Connection, stage: Stage, unit_id: str) -> Optional[str]:
        row = conn.execute("SELECT status FROM work_units WHERE stage = ? AND id = ?",
                           (stage.value, unit_id)).fetchone()
        return row["status"] if row else None

    def _reject(self, conn: sqlite3.Connection, stage: Stage, unit_id: str, requested: UnitStatus):
        current = self._status_of(conn, stage, unit_id)
        kind = StateErrorKind.CONFLICTING_TRANSITION if current else StateErrorKind.UNKNOWN_UNIT
        raise StateError(kind, unit_id, current, requested.value)

    def upsert(self, unit: WorkUnit) -> bool:
        """Insert a new unit. An existing (stage, id) is left untouched. Returns True if inserted."""
        with self._tx() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO work_units
                   (stage, id, source_url, method, form, parent_id, meta, status, attempts)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (unit.stage.value, unit.id, unit.source_url, unit.method,
                 json.dumps(unit.form) if unit.form else None, unit.parent_id,
                 json.dumps(unit.meta or {}), unit.status.value, unit.attempts),
            )
            return cur.rowcount > 0

    def next_pending(self, stage: Stage) -> Optional[WorkUnit]:
        """Claim the next eligible unit for `stage` and move it to in_flight.

        Eligible: pending, or failed with attempts left. Fresh units go first.
        """
        with self._tx() as conn:
            row = conn.execute(
                """SELECT * FROM work_units
                   WHERE stage = ? AND (status = 'pending' OR (status = 'failed' AND attempts < ?))
                   ORDER BY attempts, rowid LIMIT 1""",
                (stage.value, self.max_attempts),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """UPDATE work_units SET status = 'in_flight', updated_at = CURRENT_TIMESTAMP
                   WHERE stage = ? AND id = ?""",
                (stage.value, row["id"]),
            )
        unit = self._to_unit(row)
        unit.status = UnitStatus.IN_FLIGHT
        return unit

    def mark_done(self, stage: Stage, unit_id: str, payload: Optional[dict] = None):
        payload = payload or {}
        with self._tx() as conn:
            cur = conn.execute(
                """UPDATE work_units SET status = 'done', payload = ?, sha256 = ?, last_error = NULL,
                   updated_at = CURRENT_TIMESTAMP
                   WHERE stage = ? AND id = ? AND status = 'in_flight'""",
                (json.dumps(payload), payload.get("sha256"), stage.value, unit_id),
            )
            if cur.rowcount == 0:
                self._reject(conn, stage, unit_id, UnitStatus.DONE)

    def mark_failed(self, stage: Stage, unit_id: str, reason: str, permanent: bool = False) -> bool:
        """Record a failed attempt. Returns True once the unit is out of attempts."""
        with self._tx() as conn:
            cur = conn.execute(
                """UPDATE work_units SET status = 'failed',
                   attempts = CASE WHEN ? THEN MAX(attempts + 1, ?) ELSE attempts + 1 END,
                   last_error = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE stage = ? AND id = ? AND status = 'in_flight'""",
                (int(permanent), self.max_attempts, reason, stage.value, unit_id),
            )
            if cur.rowcount == 0:
                self._reject(conn, stage, unit_id, UnitStatus.FAILED)
            row = conn.execute("SELECT attempts FROM work_units WHERE stage = ? AND id = ?",
                               (stage.value, unit_id)).fetchone()
        return row["attempts"] >= self.max_attempts

    def release(self, stage: Stage, unit_id: str):
        """Hand an unstarted or interrupted unit back as pending."""
        with self._tx() as conn:
            cur = conn.execute(
                """UPDATE work_units SET status = 'pending', updated_at = CURRENT_TIMESTAMP
                   WHERE stage = ? AND id = ? AND status = 'in_flight'""",
                (stage.value, unit_id),
            )
            if cur.rowcount == 0:
                self._reject(conn, stage, unit_id, UnitStatus.PENDING)

    def reconcile(self) -> int:
        """Reset units left in_flight by an unclean shutdown. Returns how many."""
        with self._tx() as conn:
            cur = conn.execute(
                """UPDATE work_units SET status = 'pending', updated_at = CURRENT_TIMESTAMP
                   WHERE status = 'in_flight'"""
            )
            return cur.rowcount

    def reset_failed(self, stage: Optional[Stage] = None) -> int:
        """Operator reset: failed units become pending with a fresh attempt budget."""
        sql = """UPDATE work_units SET status = 'pending', attempts = 0, last_error = NULL,
                 updated_at = CURRENT_TIMESTAMP WHERE status = 'failed'"""
        params: Tuple = ()
        if stage is not None:
            sql += " AND stage = ?"
            params = (stage.value,)
        with self._tx() as conn:
            return conn.execute(sql, params).rowcount

    def get(self, stage: Stage, unit_id: str) -> Optional[WorkUnit]:
        row = self._conn.execute("SELECT * FROM work_units WHERE stage = ? AND id = ?",
                                 (stage.value, unit_id)).fetchone()
        return self._to_unit(row) if row else None

    def snapshot(self, stage: Optional[Stage] = None) -> List[WorkUnit]:
        if stage is None:
            rows = self._conn.execute("SELECT * FROM work_units ORDER BY rowid").fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM work_units WHERE stage = ? ORDER BY rowid",
                                      (stage.value,)).fetchall()
        return [self._to_unit(r) for r in rows]

    def counts(self, stage: Stage) -> Dict[UnitStatus, int]:
        out = {status: 0 for status in UnitStatus}
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS cnt FROM work_units WHERE stage = ? GROUP BY status",
            (stage.value,),
        ).fetchall()
        for row in rows:
            out[UnitStatus(row["status"])] = row["cnt"]
        return out

    def get_stats(self) -> List[Tuple]:
        rows = self._conn.execute(
            """SELECT stage, status, COUNT(*) AS cnt, COALESCE(SUM(attempts), 0) AS attempts
               FROM work_units GROUP BY stage, status ORDER BY stage, status"""
        ).fetchall()
        return [tuple(r) for r in rows]

    def sha256_exists(self, sha256: str, exclude_id: str = "") -> Optional[str]:
        """Return the stored path of an earlier document with the same content, or None."""
        row = self._conn.execute(
            """SELECT payload FROM work_units
               WHERE sha256 = ? AND status = 'done' AND stage = ? AND id != ? ORDER BY rowid LIMIT 1""",
            (sha256, Stage.DOCUMENT.value, exclude_id),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["payload"]).get("path")

    def save_cursor(self, unit_id: str, cursor: PaginationCursor):
        state = json.dumps(cursor.to_dict())
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO cursors (unit_id, state, updated_at)
                   VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(unit_id) DO UPDATE SET state = excluded.state,
                   updated_at = CURRENT_TIMESTAMP""",
                (unit_id, state),
            )

    def load_cursor(self, unit_id: str) -> Optional[PaginationCursor]:
        row = self._conn.execute("SELECT state FROM cursors WHERE unit_id = ?", (unit_id,)).fetchone()
        return PaginationCursor.from_dict(json.loads(row["state"])) if row else None

    def clear_cursor(self, unit_id: str):
        with self._tx() as conn:
            conn.execute("DELETE FROM cursors WHERE unit_id = ?", (unit_id,))
