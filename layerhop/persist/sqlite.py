from __future__ import annotations

import json
import logging
import queue
import sqlite3
import threading
import time
from collections.abc import Callable
from typing import Any

from layerhop.persist.base import Persistence

logger = logging.getLogger(__name__)


class SqlitePersistence(Persistence):
    def __init__(self, db_path: str, history_max_rows: int = 500) -> None:
        self.db_path = db_path
        self._pragmas = (
            "PRAGMA journal_mode=WAL",
            "PRAGMA synchronous=NORMAL",
            "PRAGMA busy_timeout=5000",
        )
        self._local = threading.local()
        self._history_max_rows = history_max_rows
        self._init_db()
        self._write_queue: queue.Queue[
            tuple[Callable[[sqlite3.Connection], object], threading.Event, dict[str, object]] | None
        ] = queue.Queue()
        self._writer_stop = threading.Event()
        self._writer_thread = threading.Thread(
            target=self._writer_loop, name="sqlite-writer", daemon=True
        )
        self._writer_thread.start()

    def _writer_loop(self) -> None:
        conn = sqlite3.connect(self.db_path)
        self._apply_pragmas(conn)
        while True:
            task = self._write_queue.get()
            if task is None:
                self._write_queue.task_done()
                break
            fn, event, holder = task
            try:
                holder["result"] = fn(conn)
                conn.commit()
            except Exception as exc:
                conn.rollback()
                holder["error"] = exc
                logger.exception("SQLite write failed")
            finally:
                event.set()
                self._write_queue.task_done()
        conn.close()

    def _run_write(self, fn: Callable[[sqlite3.Connection], object], wait: bool = True):
        if self._writer_stop.is_set():
            raise RuntimeError("Persistence writer stopped")
        event = threading.Event()
        holder: dict[str, object] = {"result": None, "error": None}
        self._write_queue.put((fn, event, holder))
        if not wait:
            return None
        event.wait()
        if holder["error"] is not None:
            raise holder["error"]
        return holder["result"]

    def flush(self) -> None:
        self._write_queue.join()

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.execute("""
                CREATE TABLE IF NOT EXISTS host_records (
                    host_identity TEXT PRIMARY KEY,
                    last_outcome TEXT NOT NULL,
                    recorded_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
                """)
        conn.execute("""
                CREATE TABLE IF NOT EXISTS preferences (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """)
        conn.execute("""
                CREATE TABLE IF NOT EXISTS hop_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    outcome TEXT NOT NULL,
                    reason TEXT,
                    host_identity TEXT,
                    from_layer INTEGER,
                    to_layer INTEGER,
                    retries_used INTEGER NOT NULL DEFAULT 0,
                    elapsed_seconds REAL NOT NULL DEFAULT 0,
                    finished_at REAL NOT NULL
                )
                """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_host_records_expiry ON host_records(expires_at)"
        )
        conn.commit()

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        for pragma in self._pragmas:
            conn.execute(pragma)

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path)
            self._apply_pragmas(conn)
            self._local.conn = conn
        return conn

    def close(self) -> None:
        self.flush()
        self._writer_stop.set()
        self._write_queue.put(None)
        self._writer_thread.join(timeout=2)
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def save_host_record(self, record: dict) -> None:
        row = (
            record["host_identity"],
            record["last_outcome"],
            float(record["recorded_at"]),
            float(record["expires_at"]),
        )

        def _task(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO host_records(host_identity, last_outcome, recorded_at, expires_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(host_identity) DO UPDATE SET last_outcome = excluded.last_outcome, "
                "recorded_at = excluded.recorded_at, expires_at = excluded.expires_at",
                row,
            )

        self._run_write(_task, wait=False)

    def load_host_records(self) -> list[dict]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT host_identity, last_outcome, recorded_at, expires_at FROM host_records"
        ).fetchall()
        return [
            {
                "host_identity": r[0],
                "last_outcome": r[1],
                "recorded_at": r[2],
                "expires_at": r[3],
            }
            for r in rows
        ]

    def get_preference(self, key: str, default: Any = None) -> Any:
        conn = self._get_conn()
        row = conn.execute("SELECT value FROM preferences WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Discarding unreadable preference %s", key)
            return default

    def set_preference(self, key: str, value: Any) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        updated_at = int(time.time())

        def _task(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO preferences(key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, payload, updated_at),
            )

        self._run_write(_task, wait=True)

    def record_hop_outcome(self, entry: dict) -> None:
        row = (
            entry["outcome"],
            entry.get("reason"),
            entry.get("host_identity"),
            entry.get("from_layer"),
            entry.get("to_layer"),
            int(entry.get("retries_used", 0)),
            float(entry.get("elapsed_seconds", 0.0)),
            float(entry.get("finished_at", time.time())),
        )

        def _task(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO hop_history(outcome, reason, host_identity, from_layer, to_layer, "
                "retries_used, elapsed_seconds, finished_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                row,
            )
            if self._history_max_rows > 0:
                conn.execute(
                    "DELETE FROM hop_history WHERE id NOT IN "
                    "(SELECT id FROM hop_history ORDER BY id DESC LIMIT ?)",
                    (self._history_max_rows,),
                )

        self._run_write(_task, wait=False)

    def hop_history(self, limit: int = 50) -> list[dict]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT outcome, reason, host_identity, from_layer, to_layer, retries_used, "
            "elapsed_seconds, finished_at FROM hop_history ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            {
                "outcome": row[0],
                "reason": row[1],
                "host_identity": row[2],
                "from_layer": row[3],
                "to_layer": row[4],
                "retries_used": row[5],
                "elapsed_seconds": row[6],
                "finished_at": row[7],
            }
            for row in rows
        ]
