from __future__ import annotations

import time

import pytest

from healthhub_ai_core.credentials import CredentialResolver, DisabledSecretStore
from healthhub_ai_core.errors import AuthError, MalformedResponseError, QuotaError
from healthhub_ai_core.executor import ProviderCooldowns, StageExecutor
from healthhub_ai_core.fallback import FallbackSynthesizer
from healthhub_ai_core.models import Deadline
from healthhub_ai_core.registry import StageDefinition
from provider_fakes import ENV_CREDENTIALS, FakeClock, ScriptedAdapter


def _stage(name: str = "summarize", normalize=None) -> StageDefinition:
    return StageDefinition(name, "completion", lambda request, outputs: {}, normalize=normalize)


@pytest.fixture
def executor():
    resolver = CredentialResolver(
        DisabledSecretStore(),
        secret_name_for=lambda provider_id: f"test/{provider_id}",
        environ=dict(ENV_CREDENTIALS),
    )
    stage_executor = StageExecutor(
        credentials=resolver,
        fallback=FallbackSynthesizer(),
        cooldowns=ProviderCooldowns(60.0),
    )
    yield stage_executor
    stage_executor.shutdown()


def test_successful_call_is_ok_and_stamped_with_provider(executor):
    adapter = ScriptedAdapter("completion", "openai", lambda stage_input: {"text": "done"})
    result = executor.run(_stage(), adapter, {"text": "input"}, timeout_seconds=2.0)

    assert result.status == "ok"
    assert result.error_detail is None
    assert result.output == {"text": "done", "source": "openai"}
    assert result.provider_latency_ms >= 0


def test_provider_error_degrades_with_fallback_output(executor):
    def reject(stage_input):
        raise AuthError("invalid api key", status_code=401)

    adapter = ScriptedAdapter("completion", "openai", reject)
    result = executor.run(_stage(), adapter, {"text": "Troponin high"}, timeout_seconds=2.0)

    assert result.status == "degraded"
    assert result.output["source"] == "fallback"
    assert result.output["high_risk_flags"] == ["troponin"]
    assert result.error_detail["kind"] == "auth"
    assert result.error_detail["provider_id"] == "openai"
    assert result.error_detail["status_code"] == 401


def test_slow_provider_is_abandoned_at_stage_timeout(executor):
    adapter = ScriptedAdapter("completion", "openai", lambda stage_input: {"text": "late"}, delay_seconds=1.5)
    started = time.monotonic()
    result = executor.run(_stage(), adapter, {}, timeout_seconds=0.2)
    elapsed = time.monotonic() - started

    assert result.status == "degraded"
    assert result.error_detail["kind"] == "timeout"
    assert result.output["source"] == "fallback"
    assert elapsed < 1.0


def test_unexpected_adapter_exception_fails_stage(executor):
    def explode(stage_input):
        raise RuntimeError("bug in adapter")

    adapter = ScriptedAdapter("completion", "openai", explode)
    result = executor.run(_stage(), adapter, {}, timeout_seconds=2.0)

    assert result.status == "failed"
    assert result.error_detail["kind"] == "internal"
    assert result.output["source"] == "fallback"


def test_credential_lost_mid_run_fails_stage():
    resolver = CredentialResolver(DisabledSecretStore(), secret_name_for=lambda provider_id: provider_id, environ={})
    stage_executor = StageExecutor(credentials=resolver, fallback=FallbackSynthesizer())
    adapter = ScriptedAdapter("completion", "openai", lambda stage_input: {"text": "unused"})
    try:
        result = stage_executor.run(_stage(), adapter, {}, timeout_seconds=2.0)
    finally:
        stage_executor.shutdown()

    assert result.status == "failed"
    assert result.error_detail["kind"] == "credential"
    assert adapter.calls == []


def test_quota_error_cools_provider_down(executor):
    def throttled(stage_input):
        raise QuotaError("rate limited", status_code=429)

    adapter = ScriptedAdapter("completion", "openai", throttled)
    first = executor.run(_stage(), adapter, {}, timeout_seconds=2.0)
    second = executor.run(_stage("recommend"), adapter, {}, timeout_seconds=2.0)

    assert first.error_detail["kind"] == "quota"
    assert second.status == "degraded"
    assert second.error_detail["kind"] == "quota"
    assert "cooling down" in second.error_detail["message"]
    assert len(adapter.calls) == 1


def test_cooldown_expires():
    clock = FakeClock()
    cooldowns = ProviderCooldowns(60.0, clock=clock)
    cooldowns.trip("openai")
    assert cooldowns.remaining("openai") == 60.0
    clock.advance(61)
    assert cooldowns.remaining("openai") == 0.0


def test_expired_deadline_skips_provider_call(executor):
    adapter = ScriptedAdapter("completion", "openai", lambda stage_input: {"text": "unused"})
    result = executor.run(_stage(), adapter, {}, timeout_seconds=2.0, deadline=Deadline(0.0))

    assert result.status == "degraded"
    assert result.error_detail["kind"] == "timeout"
    assert adapter.calls == []


def test_normalizer_rejection_degrades(executor):
    def normalize(output, stage_input):
        raise MalformedResponseError("not json", provider_id="openai")

    adapter = ScriptedAdapter("completion", "openai", lambda stage_input: {"text": "free text"})
    result = executor.run(_stage(normalize=normalize), adapter, {}, timeout_seconds=2.0)

    assert result.status == "degraded"
    assert result.error_detail["kind"] == "malformed"


def test_adapter_supplied_substitute_is_recorded_as_degraded(executor):
    adapter = ScriptedAdapter(
        "speech-to-text",
        "azure-speech",
        lambda stage_input: {
            "transcript": "demo",
            "source": "fallback",
            "degradation": {"kind": "auth", "provider_id": "azure-speech", "message": "bad key"},
        },
    )
    result = executor.run(_stage("transcribe"), adapter, {}, timeout_seconds=2.0)

    assert result.status == "degraded"
    assert result.error_detail["kind"] == "auth"
    assert "degradation" not in result.output
    assert result.output["transcript"] == "demo"
