from __future__ import annotations

import time

import pytest

from healthhub_ai_core.credentials import CredentialResolver, DisabledSecretStore
from healthhub_ai_core.errors import CredentialUnavailable, SecretStoreError, TransientError, UnknownPipelineError
from healthhub_ai_core.executor import StageExecutor
from healthhub_ai_core.fallback import FallbackSynthesizer
from healthhub_ai_core.hooks import HookRunner
from healthhub_ai_core.models import PipelineRequest, SubjectContext
from healthhub_ai_core.orchestrator import PipelineOrchestrator
from healthhub_ai_core.pipelines import build_default_registry
from provider_fakes import ENV_CREDENTIALS, ScriptedAdapter, happy_adapters

_DOCUMENT = {"text": "Patient reports chest pain and fever.", "file_name": "note.txt", "mime_type": "text/plain"}


def _failing(name: str, provider_id: str, delay_seconds: float = 0.0) -> ScriptedAdapter:
    def fail(stage_input):
        raise TransientError("provider unavailable", status_code=503)

    return ScriptedAdapter(name, provider_id, fail, delay_seconds=delay_seconds)


def _build(adapters, *, environ=None, stage_timeout=2.0, budget_seconds=10.0, hooks=None, secret_store=None):
    resolver = CredentialResolver(
        secret_store or DisabledSecretStore(),
        secret_name_for=lambda provider_id: f"test/{provider_id}",
        environ=dict(ENV_CREDENTIALS) if environ is None else environ,
    )
    executor = StageExecutor(credentials=resolver, fallback=FallbackSynthesizer())
    orchestrator = PipelineOrchestrator(
        registry=build_default_registry(),
        adapters=adapters,
        executor=executor,
        credentials=resolver,
        stage_timeout=lambda stage_name: stage_timeout,
        budget_seconds=budget_seconds,
        hooks=hooks,
    )
    return orchestrator, executor


@pytest.fixture
def orchestrator_factory():
    executors = []

    def _factory(adapters, **kwargs):
        orchestrator, executor = _build(adapters, **kwargs)
        executors.append(executor)
        return orchestrator

    yield _factory
    for executor in executors:
        executor.shutdown()


def test_english_document_runs_six_stages_without_degradation(orchestrator_factory):
    orchestrator = orchestrator_factory(happy_adapters())
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT, SubjectContext(age=54)))

    assert [stage.stage_name for stage in result.stages] == [
        "extract-text",
        "extract-entities",
        "sentiment",
        "summarize",
        "risk-score",
        "recommend",
    ]
    assert result.overall_degradation == "none"
    assert result.degradation_notice is None
    assert result.final_output["risk"]["overall_risk"] == 55.0
    assert result.final_output["risk"]["band"] == "moderate"
    assert result.final_output["recommendations"][0] == "Book a cardiology review this week."
    assert result.final_output["localized"] is None
    assert result.final_output["reliability"] == "High"


def test_non_english_document_adds_localize_stage(orchestrator_factory):
    adapters = happy_adapters()
    orchestrator = orchestrator_factory(adapters)
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT, requested_language="pt"))

    assert result.stages[-1].stage_name == "localize"
    assert result.final_output["localized"]["translated"] == "Texto traduzido."
    assert adapters["speech-out"].calls[0]["target_language"] == "pt"


def test_one_degraded_stage_makes_run_partial(orchestrator_factory):
    adapters = happy_adapters()
    adapters["clinical-nlp"] = _failing("clinical-nlp", "aws-ai")
    orchestrator = orchestrator_factory(adapters)
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT))

    statuses = {stage.stage_name: stage.status for stage in result.stages}
    assert statuses["extract-entities"] == "degraded"
    assert statuses["sentiment"] == "degraded"
    assert statuses["summarize"] == "ok"
    assert result.overall_degradation == "partial"
    assert result.degradation_notice == "Some results may be approximate."


def test_degraded_upstream_output_still_feeds_later_stages(orchestrator_factory):
    adapters = happy_adapters()
    adapters["completion"] = _failing("completion", "openai")
    orchestrator = orchestrator_factory(adapters)
    result = orchestrator.execute(PipelineRequest("conversation", {"message": "I am worried about chest pain"}))

    respond, insights = result.stages[0], result.stages[1]
    assert respond.status == "degraded"
    assert insights.status == "ok"
    assert "can't reach the AI service" in adapters["clinical-nlp"].calls[0]["response"]
    assert result.final_output["urgency"] == "high"
    assert len(result.final_output["follow_up_questions"]) == 3


def test_all_stages_failing_is_full_fallback(orchestrator_factory):
    adapters = {
        "completion": _failing("completion", "openai"),
        "ocr": _failing("ocr", "aws-ai"),
        "clinical-nlp": _failing("clinical-nlp", "aws-ai"),
        "vision": _failing("vision", "google-vision"),
        "image-labels": _failing("image-labels", "aws-ai"),
        "speech-to-text": _failing("speech-to-text", "azure-speech"),
        "speech-out": _failing("speech-out", "aws-ai"),
    }
    orchestrator = orchestrator_factory(adapters)
    result = orchestrator.execute(PipelineRequest("image", {"image_base64": "aW1n"}, requested_language="es"))

    assert len(result.stages) == 6
    assert all(stage.status == "degraded" for stage in result.stages)
    assert result.overall_degradation == "full-fallback"
    assert result.final_output["labels"]
    assert result.final_output["risk"]["band"] == "routine"


def test_all_stages_timing_out_stays_within_bounded_time(orchestrator_factory):
    adapters = {
        name: ScriptedAdapter(name, adapter.provider_id, lambda stage_input: {"text": "late"}, delay_seconds=2.0)
        for name, adapter in happy_adapters().items()
    }
    orchestrator = orchestrator_factory(adapters, stage_timeout=0.2)
    started = time.monotonic()
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT))
    elapsed = time.monotonic() - started

    assert len(result.stages) == 6
    assert all(stage.error_detail["kind"] == "timeout" for stage in result.stages)
    assert result.overall_degradation == "full-fallback"
    assert elapsed < 6 * 0.2 + 1.0


def test_exhausted_budget_degrades_remaining_stages_without_calls(orchestrator_factory):
    adapters = happy_adapters()
    adapters["ocr"] = ScriptedAdapter("ocr", "aws-ai", lambda stage_input: {"text": "late"}, delay_seconds=1.0)
    orchestrator = orchestrator_factory(adapters, stage_timeout=5.0, budget_seconds=0.3)
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT))

    assert all(stage.error_detail and stage.error_detail["kind"] == "timeout" for stage in result.stages)
    assert adapters["clinical-nlp"].calls == []
    assert adapters["completion"].calls == []


def test_image_run_combines_both_label_providers(orchestrator_factory):
    adapters = happy_adapters()
    orchestrator = orchestrator_factory(adapters)
    result = orchestrator.execute(PipelineRequest("image", {"image_base64": "aW1n", "image_type": "chest X-ray"}))

    assert [stage.stage_name for stage in result.stages] == [
        "label-image",
        "detect-labels",
        "interpret-image",
        "risk-score",
        "recommend",
    ]
    assert result.overall_degradation == "none"
    confidence = result.final_output["confidence"]
    assert confidence["google_vision_confidence"] == 0.9
    assert confidence["aws_rekognition_confidence"] == 0.8
    assert confidence["composite_confidence"] == pytest.approx(0.85)
    assert confidence["risk_assessment_confidence"] == 0.8
    assert confidence["reliability"] == "Medium"
    assert result.final_output["aws_labels"][0]["label"] == "X-Ray Film"
    assert result.final_output["risk"]["label_rule_score"] == 27.0
    interpret_prompt = adapters["completion"].calls[0]["messages"][-1]["content"]
    assert "aws_rekognition_labels: X-Ray Film, Chest" in interpret_prompt


def test_slow_secret_store_counts_against_the_run_budget(orchestrator_factory):
    class SlowFailingStore:
        def get_secret(self, name):
            time.sleep(0.6)
            raise SecretStoreError(f"no secret {name}")

    adapters = happy_adapters()
    orchestrator = orchestrator_factory(adapters, budget_seconds=0.3, secret_store=SlowFailingStore())
    started = time.monotonic()
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT))
    elapsed = time.monotonic() - started

    assert elapsed < 0.55
    assert result.overall_degradation == "full-fallback"
    assert all(stage.error_detail["kind"] == "timeout" for stage in result.stages)
    assert all(adapter.calls == [] for adapter in adapters.values())


def test_missing_credentials_abort_before_any_stage(orchestrator_factory):
    adapters = happy_adapters()
    environ = {key: value for key, value in ENV_CREDENTIALS.items() if not key.startswith("AZURE")}
    orchestrator = orchestrator_factory(adapters, environ=environ)

    with pytest.raises(CredentialUnavailable) as exc_info:
        orchestrator.execute(PipelineRequest("transcription", {"audio_base64": "YXVkaW8="}))

    assert exc_info.value.provider_id == "azure-speech"
    assert all(adapter.calls == [] for adapter in adapters.values())


def test_missing_credentials_for_unused_provider_do_not_abort(orchestrator_factory):
    environ = {key: value for key, value in ENV_CREDENTIALS.items() if not key.startswith("AZURE")}
    orchestrator = orchestrator_factory(happy_adapters(), environ=environ)
    result = orchestrator.execute(PipelineRequest("document", _DOCUMENT))
    assert result.overall_degradation == "none"


def test_hooks_see_every_stage_and_the_run(orchestrator_factory):
    hooks = HookRunner()
    seen_stages: list[str] = []
    seen_runs: list[str] = []
    hooks.add_after_stage(lambda request, stage: seen_stages.append(stage.stage_name))
    hooks.add_after_run(lambda request, result: seen_runs.append(result.request_id))
    orchestrator = orchestrator_factory(happy_adapters(), hooks=hooks)

    request = PipelineRequest("transcription", {"audio_base64": "YXVkaW8="})
    result = orchestrator.execute(request)

    assert seen_stages == ["transcribe", "extract-entities", "summarize"]
    assert seen_runs == [request.request_id]
    assert result.final_output["transcript"] == "chest pain\nand fever"


def test_aliases_resolve_and_unknown_kind_raises(orchestrator_factory):
    orchestrator = orchestrator_factory(happy_adapters())
    result = orchestrator.execute(PipelineRequest("chat", {"message": "hello"}))
    assert result.pipeline_kind == "conversation"
    with pytest.raises(UnknownPipelineError):
        orchestrator.execute(PipelineRequest("genomics", {}))


def test_orchestrator_rejects_registry_with_missing_adapter():
    adapters = happy_adapters()
    adapters.pop("vision")
    with pytest.raises(ValueError):
        _build(adapters)
