from __future__ import annotations

import json
import uuid
from typing import Any

from healthhub_ai_core.models import PipelineRequest, PipelineResult
from healthhub_ai_core.time_utils import parse_iso, to_iso, utc_now

from .database import SQLiteRunDB


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class RunStore:
    """Persists completed pipeline runs; stage rows carry status and error metadata only."""

    def __init__(self, db: SQLiteRunDB) -> None:
        self._db = db

    def record_run(self, request: PipelineRequest, result: PipelineResult) -> None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pipeline_runs (
                  request_id, pipeline_kind, requested_language, overall_degradation, stage_count,
                  final_output_json, started_at, finished_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.request_id,
                    result.pipeline_kind,
                    request.requested_language,
                    result.overall_degradation,
                    len(result.stages),
                    _json_dumps(result.final_output),
                    result.started_at,
                    result.finished_at,
                    now,
                ),
            )
            conn.execute("DELETE FROM stage_results WHERE request_id = ?", (result.request_id,))
            for position, stage in enumerate(result.stages):
                detail = stage.error_detail or {}
                conn.execute(
                    """
                    INSERT INTO stage_results (
                      id, request_id, position, stage_name, status, provider_latency_ms,
                      output_source, error_kind, error_message, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        uuid.uuid4().hex,
                        result.request_id,
                        position,
                        stage.stage_name,
                        stage.status,
                        stage.provider_latency_ms,
                        stage.output.get("source"),
                        detail.get("kind"),
                        detail.get("message"),
                        now,
                    ),
                )

    def get_run(self, request_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            run = conn.execute(
                """
                SELECT *
                FROM pipeline_runs
                WHERE request_id = ?
                LIMIT 1
                """,
                (request_id,),
            ).fetchone()
            if not run:
                return None
            stages = conn.execute(
                """
                SELECT stage_name, status, provider_latency_ms, output_source, error_kind, error_message
                FROM stage_results
                WHERE request_id = ?
                ORDER BY position ASC
                """,
                (request_id,),
            ).fetchall()

        started = parse_iso(run["started_at"])
        finished = parse_iso(run["finished_at"])
        duration_ms = int((finished - started).total_seconds() * 1000) if started and finished else None
        return {
            "request_id": run["request_id"],
            "pipeline_kind": run["pipeline_kind"],
            "requested_language": run["requested_language"],
            "overall_degradation": run["overall_degradation"],
            "stage_count": run["stage_count"],
            "final_output": json.loads(run["final_output_json"]),
            "started_at": run["started_at"],
            "finished_at": run["finished_at"],
            "duration_ms": duration_ms,
            "stages": [dict(row) for row in stages],
        }

    def count_runs(self, *, pipeline_kind: str | None = None) -> int:
        with self._db.connection() as conn:
            if pipeline_kind:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM pipeline_runs WHERE pipeline_kind = ?", (pipeline_kind,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS total FROM pipeline_runs").fetchone()
        return int(row["total"]) if row else 0
