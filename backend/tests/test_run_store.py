from __future__ import annotations

from analysis_store import RunStore, SQLiteRunDB
from healthhub_ai_core.models import PipelineRequest, PipelineResult, StageResult


def _result(request: PipelineRequest, *, degraded: bool = False) -> PipelineResult:
    stages = (
        StageResult("extract-text", "ok", {"text": "BP 150/95", "source": "aws-ai"}, 120),
        StageResult(
            "summarize",
            "degraded" if degraded else "ok",
            {"summary": "High blood pressure reading.", "source": "fallback" if degraded else "openai"},
            340,
            {"kind": "quota", "provider_id": "openai", "message": "rate limited"} if degraded else None,
        ),
    )
    return PipelineResult(
        request_id=request.request_id,
        pipeline_kind=request.pipeline_kind,
        stages=stages,
        overall_degradation="partial" if degraded else "none",
        final_output={"summary": "High blood pressure reading."},
        started_at="2026-03-02T10:00:00+00:00",
        finished_at="2026-03-02T10:00:01.500000+00:00",
    )


def test_recorded_run_round_trips_with_stage_metadata(tmp_path):
    store = RunStore(SQLiteRunDB(str(tmp_path / "runs.sqlite")))
    request = PipelineRequest("document", {"text": "BP 150/95"}, requested_language="es")
    store.record_run(request, _result(request, degraded=True))

    record = store.get_run(request.request_id)

    assert record["pipeline_kind"] == "document"
    assert record["requested_language"] == "es"
    assert record["overall_degradation"] == "partial"
    assert record["duration_ms"] == 1500
    assert record["final_output"] == {"summary": "High blood pressure reading."}
    assert [stage["stage_name"] for stage in record["stages"]] == ["extract-text", "summarize"]
    assert record["stages"][1]["output_source"] == "fallback"
    assert record["stages"][1]["error_kind"] == "quota"


def test_rerecording_replaces_stage_rows(tmp_path):
    store = RunStore(SQLiteRunDB(str(tmp_path / "runs.sqlite")))
    request = PipelineRequest("document", {"text": "BP 150/95"})
    store.record_run(request, _result(request, degraded=True))
    store.record_run(request, _result(request))

    record = store.get_run(request.request_id)
    assert record["overall_degradation"] == "none"
    assert len(record["stages"]) == 2
    assert store.count_runs() == 1


def test_count_runs_filters_by_kind(tmp_path):
    store = RunStore(SQLiteRunDB(str(tmp_path / "runs.sqlite")))
    for kind in ("document", "document", "image"):
        request = PipelineRequest(kind, {})
        store.record_run(request, _result(request))

    assert store.count_runs() == 3
    assert store.count_runs(pipeline_kind="document") == 2
    assert store.get_run("run_missing") is None
