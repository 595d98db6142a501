from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


TERMINAL_SPEECH_STATES = {"stopped", "timed-out"}

FALLBACK_SOURCE = "fallback"
ENGLISH_CODES = {"", "en", "en-us", "en-gb"}


def is_english(language: str | None) -> bool:
    return (language or "en").strip().lower() in ENGLISH_CODES


@dataclass(frozen=True)
class Credential:
    provider_id: str
    secret_name: str
    value: Mapping[str, str]
    fetched_at: float
    ttl: float
    source: str = "secret_store"

    @classmethod
    def build(
        cls,
        *,
        provider_id: str,
        secret_name: str,
        value: Mapping[str, Any],
        ttl: float,
        source: str,
        fetched_at: float | None = None,
    ) -> "Credential":
        frozen = MappingProxyType({str(k): "" if v is None else str(v) for k, v in value.items()})
        return cls(
            provider_id=provider_id,
            secret_name=secret_name,
            value=frozen,
            fetched_at=time.monotonic() if fetched_at is None else fetched_at,
            ttl=ttl,
            source=source,
        )

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl

    def get(self, key: str, default: str = "") -> str:
        return self.value.get(key) or default


@dataclass(frozen=True)
class SubjectContext:
    age: int | None = None
    gender: str | None = None
    conditions: tuple[str, ...] = ()
    chronic_conditions: tuple[str, ...] = ()
    medical_history: tuple[str, ...] = ()

    def describe(self) -> str:
        age = f"{self.age}-year-old" if self.age is not None else "adult"
        gender = self.gender or "patient"
        conditions = ", ".join(self.conditions) or "no known conditions"
        described = f"{age} {gender}, {conditions}"
        if self.medical_history:
            described += f"; history: {', '.join(self.medical_history)}"
        return described


@dataclass(frozen=True)
class PipelineRequest:
    pipeline_kind: str
    input_payload: Mapping[str, Any]
    subject_context: SubjectContext = field(default_factory=SubjectContext)
    requested_language: str = "en"
    request_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex}")

    def __post_init__(self) -> None:
        if not isinstance(self.input_payload, MappingProxyType):
            object.__setattr__(self, "input_payload", MappingProxyType(dict(self.input_payload)))


@dataclass(frozen=True)
class StageResult:
    stage_name: str
    status: str
    output: dict[str, Any]
    provider_latency_ms: int
    error_detail: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "status": self.status,
            "output": self.output,
            "provider_latency_ms": self.provider_latency_ms,
            "error_detail": self.error_detail,
        }


def overall_degradation(stages: list[StageResult] | tuple[StageResult, ...]) -> str:
    if not stages:
        return "none"
    not_ok = [stage for stage in stages if stage.status != "ok"]
    if len(not_ok) == len(stages):
        return "full-fallback"
    if not_ok:
        return "partial"
    return "none"


@dataclass(frozen=True)
class PipelineResult:
    request_id: str
    pipeline_kind: str
    stages: tuple[StageResult, ...]
    overall_degradation: str
    final_output: dict[str, Any]
    started_at: str
    finished_at: str

    @property
    def degradation_notice(self) -> str | None:
        if self.overall_degradation == "none":
            return None
        return "Some results may be approximate."

    def as_envelope(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "pipeline_kind": self.pipeline_kind,
            "stages": [stage.as_dict() for stage in self.stages],
            "overall_degradation": self.overall_degradation,
            "degradation_notice": self.degradation_notice,
            "final_output": self.final_output,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class Deadline:
    """Monotonic execution budget threaded through every stage of a run."""

    def __init__(self, budget_seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max(0.0, budget_seconds)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def clamp(self, timeout_seconds: float) -> float:
        return min(timeout_seconds, self.remaining())


@dataclass
class SpeechSession:
    session_id: str
    language: str
    state: str = "idle"
    fragments: list[str] = field(default_factory=list)
    last_recognized_fragment: str = ""
    partial_text: str = ""
    source: str = "azure-speech"
    cancellation: dict[str, Any] | None = None
    history: list[str] = field(default_factory=lambda: ["idle"])

    @property
    def accumulated_text(self) -> str:
        return "\n".join(self.fragments)
