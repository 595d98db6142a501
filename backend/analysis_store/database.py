from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteRunDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                  request_id TEXT PRIMARY KEY,
                  pipeline_kind TEXT NOT NULL,
                  requested_language TEXT NOT NULL,
                  overall_degradation TEXT NOT NULL,
                  stage_count INTEGER NOT NULL,
                  final_output_json TEXT NOT NULL,
                  started_at TEXT NOT NULL,
                  finished_at TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS stage_results (
                  id TEXT PRIMARY KEY,
                  request_id TEXT NOT NULL REFERENCES pipeline_runs(request_id) ON DELETE CASCADE,
                  position INTEGER NOT NULL,
                  stage_name TEXT NOT NULL,
                  status TEXT NOT NULL,
                  provider_latency_ms INTEGER NOT NULL,
                  output_source TEXT,
                  error_kind TEXT,
                  error_message TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_stage_results_request
                  ON stage_results(request_id, position);
                CREATE INDEX IF NOT EXISTS idx_pipeline_runs_kind_started
                  ON pipeline_runs(pipeline_kind, started_at);
                """
            )
