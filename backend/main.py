from __future__ import annotations

import logging
import os
import re
import sqlite3
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from analysis_store import RunStore, SQLiteRunDB
from healthhub_ai_core import (
    AwsSecretsManagerStore,
    CredentialResolver,
    CredentialUnavailable,
    DisabledSecretStore,
    FallbackSynthesizer,
    HookRunner,
    PipelineOrchestrator,
    PipelineRequest,
    PipelineResult,
    ProviderCooldowns,
    ServiceSettings,
    SpeechSessionManager,
    StageExecutor,
    StageResult,
    SubjectContext,
    UnknownPipelineError,
    build_default_registry,
)
from healthhub_ai_core.credentials import SecretStore
from healthhub_ai_core.logging import get_logger, log_with_context, set_log_level
from healthhub_ai_core.speech_session import RecognizerFactory
from healthhub_providers import (
    AwsClientFactory,
    AzureRestRecognizer,
    AzureSdkRecognizer,
    ClinicalNlpAdapter,
    CollaboratorClient,
    GoogleVisionAdapter,
    OpenAICompletionAdapter,
    RekognitionLabelsAdapter,
    SpeechOutAdapter,
    SpeechToTextAdapter,
    TextractOcrAdapter,
)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    candidates = [
        repo_root / ".env",
        repo_root / "backend/.env",
    ]
    for candidate in candidates:
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logger = get_logger("healthhub.api")


class SubjectContextPayload(BaseModel):
    age: int | None = Field(default=None, ge=0, le=130)
    gender: str | None = None
    conditions: list[str] = Field(default_factory=list)
    chronic_conditions: list[str] = Field(default_factory=list)
    medical_history: list[str] = Field(default_factory=list)

    def to_subject(self) -> SubjectContext:
        return SubjectContext(
            age=self.age,
            gender=self.gender,
            conditions=tuple(self.conditions),
            chronic_conditions=tuple(self.chronic_conditions),
            medical_history=tuple(self.medical_history),
        )


class AnalyzeRequest(BaseModel):
    input_payload: dict[str, Any]
    subject_context: SubjectContextPayload | None = None
    requested_language: str = Field(default="en", min_length=2, max_length=16)


def _build_secret_store(settings: ServiceSettings) -> SecretStore:
    if settings.secrets_backend == "none":
        return DisabledSecretStore()
    return AwsSecretsManagerStore(settings.aws_region)


def _recognizer_factory(settings: ServiceSettings) -> RecognizerFactory:
    if settings.speech_backend == "rest":
        return lambda: AzureRestRecognizer(timeout_seconds=settings.speech_timeout_seconds)
    return AzureSdkRecognizer


class HealthHubAIApp:
    def __init__(
        self,
        settings: ServiceSettings | None = None,
        *,
        secret_store: SecretStore | None = None,
        aws_clients: AwsClientFactory | None = None,
        recognizer_factory: RecognizerFactory | None = None,
    ) -> None:
        self.settings = settings or ServiceSettings.from_env()
        set_log_level(self.settings.log_level)
        self.secret_store = secret_store or _build_secret_store(self.settings)
        self.credentials = CredentialResolver(
            self.secret_store,
            secret_name_for=self.settings.secret_name,
            ttl_seconds=self.settings.credential_ttl_seconds,
            refresh_margin_seconds=self.settings.credential_refresh_margin_seconds,
        )
        self.fallback = FallbackSynthesizer()
        self.executor = StageExecutor(
            credentials=self.credentials,
            fallback=self.fallback,
            cooldowns=ProviderCooldowns(self.settings.quota_cooldown_seconds),
        )
        self.speech = SpeechSessionManager(
            recognizer_factory or _recognizer_factory(self.settings),
            fallback=self.fallback,
            timeout_seconds=self.settings.speech_timeout_seconds,
        )

        aws_clients = aws_clients or AwsClientFactory()
        collaborators = CollaboratorClient(
            doctor_service_url=self.settings.doctor_service_url,
            appointment_service_url=self.settings.appointment_service_url,
        )
        self.adapters = {
            "completion": OpenAICompletionAdapter(
                api_base=self.settings.openai_api_base,
                model=self.settings.completion_model,
                collaborators=collaborators,
            ),
            "ocr": TextractOcrAdapter(aws_clients),
            "clinical-nlp": ClinicalNlpAdapter(aws_clients),
            "vision": GoogleVisionAdapter(api_base=self.settings.google_vision_api_base),
            "image-labels": RekognitionLabelsAdapter(aws_clients),
            "speech-to-text": SpeechToTextAdapter(self.speech),
            "speech-out": SpeechOutAdapter(aws_clients),
        }

        self.db = SQLiteRunDB(self.settings.db_path)
        self.runs = RunStore(self.db)

        self.hooks = HookRunner()
        self.hooks.add_after_stage(self._log_stage)
        self.hooks.add_after_run(self._record_run)

        self.registry = build_default_registry()
        self.orchestrator = PipelineOrchestrator(
            registry=self.registry,
            adapters=self.adapters,
            executor=self.executor,
            credentials=self.credentials,
            stage_timeout=self.settings.stage_timeout,
            budget_seconds=self.settings.pipeline_budget_seconds,
            hooks=self.hooks,
        )

    def _log_stage(self, request: PipelineRequest, result: StageResult) -> None:
        if result.status != "ok":
            log_with_context(
                logger,
                logging.WARNING,
                "stage used substitute output",
                request_id=request.request_id,
                stage=result.stage_name,
                status=result.status,
                error_kind=(result.error_detail or {}).get("kind"),
            )

    def _record_run(self, request: PipelineRequest, result: PipelineResult) -> None:
        try:
            self.runs.record_run(request, result)
        except sqlite3.Error as exc:
            log_with_context(
                logger, logging.ERROR, "run record not persisted", request_id=request.request_id, error=str(exc)
            )


container = HealthHubAIApp()
app = FastAPI(title="HealthHub AI Orchestration")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _caller_budget_seconds(x_request_timeout_ms: int | None) -> float | None:
    if x_request_timeout_ms is None:
        return None
    if x_request_timeout_ms <= 0:
        raise HTTPException(status_code=422, detail="X-Request-Timeout-Ms must be positive.")
    return x_request_timeout_ms / 1000.0


@app.get("/health")
def health():
    return {
        "status": "ok",
        "product": container.settings.product,
        "environment": container.settings.environment,
        "providers": container.credentials.snapshot(),
        "active_speech_sessions": container.speech.active_sessions(),
    }


@app.get("/analyze/pipelines")
def list_pipelines():
    return {
        "pipelines": [
            {"kind": pipeline.kind, "stages": pipeline.stage_names()} for pipeline in container.registry.all()
        ]
    }


@app.get("/analyze/runs/{request_id}")
def get_run(request_id: str):
    record = container.runs.get_run(request_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found.")
    return record


@app.post("/analyze/{pipeline_kind}")
def analyze(
    pipeline_kind: str,
    payload: AnalyzeRequest,
    x_request_timeout_ms: int | None = Header(default=None),
):
    try:
        pipeline = container.registry.resolve(pipeline_kind)
    except UnknownPipelineError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    budget_seconds = _caller_budget_seconds(x_request_timeout_ms)
    request = PipelineRequest(
        pipeline_kind=pipeline.kind,
        input_payload=payload.input_payload,
        subject_context=(payload.subject_context or SubjectContextPayload()).to_subject(),
        requested_language=payload.requested_language.strip(),
    )
    try:
        result = container.orchestrator.execute(request, budget_seconds=budget_seconds)
    except CredentialUnavailable as exc:
        return JSONResponse(status_code=503, content={"request_id": request.request_id, "error": exc.as_error()})
    return result.as_envelope()


@app.post("/admin/credentials/{provider_id}/invalidate")
def invalidate_credentials(provider_id: str):
    if provider_id not in container.credentials.known_providers:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")
    container.credentials.invalidate(provider_id)
    return {"provider_id": provider_id, "invalidated": True}
