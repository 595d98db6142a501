from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


_DEFAULT_STAGE_TIMEOUTS = {
    "extract-text": 20.0,
    "label-image": 15.0,
    "transcribe": 27.0,
    "summarize": 20.0,
    "respond": 25.0,
    "localize": 10.0,
    "speak": 10.0,
}

PROVIDER_SECRET_ENV = {
    "openai": "OPENAI_SECRET_NAME",
    "azure-speech": "AZURE_SECRET_NAME",
    "google-vision": "GOOGLE_SECRET_NAME",
    "aws-ai": "AWS_AI_SECRET_NAME",
}


def _env_str(name: str, default: str) -> str:
    value = (os.getenv(name) or "").strip()
    return value or default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _stage_env_name(stage_name: str) -> str:
    return "HEALTHHUB_STAGE_TIMEOUT_" + re.sub(r"[^A-Za-z0-9]+", "_", stage_name).upper()


@dataclass(frozen=True)
class ServiceSettings:
    product: str = "healthhub"
    environment: str = "dev"
    secrets_backend: str = "aws"
    aws_region: str = "us-east-1"
    secret_names: dict[str, str] = field(default_factory=dict)
    credential_ttl_seconds: float = 300.0
    credential_refresh_margin_seconds: float = 30.0
    pipeline_budget_seconds: float = 28.0
    default_stage_timeout_seconds: float = 15.0
    stage_timeouts: dict[str, float] = field(default_factory=dict)
    speech_timeout_seconds: float = 25.0
    speech_backend: str = "sdk"
    quota_cooldown_seconds: float = 60.0
    openai_api_base: str = "https://api.openai.com/v1"
    completion_model: str = "gpt-4o-mini"
    google_vision_api_base: str = "https://vision.googleapis.com/v1"
    doctor_service_url: str = ""
    appointment_service_url: str = ""
    db_path: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        product = _env_str("HEALTHHUB_PRODUCT", "healthhub")
        environment = _env_str("HEALTHHUB_ENV", "dev")
        secret_names = {
            provider_id: _env_str(env_name, f"{product}/{environment}/{provider_id}-credentials")
            for provider_id, env_name in PROVIDER_SECRET_ENV.items()
        }
        default_stage_timeout = _env_float("HEALTHHUB_STAGE_TIMEOUT_SECONDS", 15.0)
        stage_timeouts = dict(_DEFAULT_STAGE_TIMEOUTS)
        for stage_name in list(stage_timeouts):
            stage_timeouts[stage_name] = _env_float(_stage_env_name(stage_name), stage_timeouts[stage_name])
        for key, raw in os.environ.items():
            if key.startswith("HEALTHHUB_STAGE_TIMEOUT_") and key != "HEALTHHUB_STAGE_TIMEOUT_SECONDS":
                stage_name = key[len("HEALTHHUB_STAGE_TIMEOUT_") :].lower().replace("_", "-")
                stage_timeouts[stage_name] = _env_float(key, default_stage_timeout)

        db_path = _env_str(
            "HEALTHHUB_DB_PATH",
            str(Path(__file__).resolve().parents[1] / "healthhub_runs.sqlite"),
        )
        return cls(
            product=product,
            environment=environment,
            secrets_backend=_env_str("HEALTHHUB_SECRETS_BACKEND", "aws").lower(),
            aws_region=_env_str("AWS_REGION", "us-east-1"),
            secret_names=secret_names,
            credential_ttl_seconds=_env_float("HEALTHHUB_CREDENTIAL_TTL_SECONDS", 300.0),
            credential_refresh_margin_seconds=_env_float("HEALTHHUB_CREDENTIAL_REFRESH_MARGIN_SECONDS", 30.0),
            pipeline_budget_seconds=_env_float("HEALTHHUB_PIPELINE_BUDGET_SECONDS", 28.0),
            default_stage_timeout_seconds=default_stage_timeout,
            stage_timeouts=stage_timeouts,
            speech_timeout_seconds=_env_float("HEALTHHUB_SPEECH_TIMEOUT_SECONDS", 25.0),
            speech_backend=_env_str("HEALTHHUB_SPEECH_BACKEND", "sdk").lower(),
            quota_cooldown_seconds=_env_float("HEALTHHUB_QUOTA_COOLDOWN_SECONDS", 60.0),
            openai_api_base=_env_str("OPENAI_API_BASE", "https://api.openai.com/v1").rstrip("/"),
            completion_model=_env_str("HEALTHHUB_COMPLETION_MODEL", "gpt-4o-mini"),
            google_vision_api_base=_env_str("GOOGLE_VISION_API_BASE", "https://vision.googleapis.com/v1").rstrip("/"),
            doctor_service_url=_env_str("DOCTOR_SERVICE_URL", "").rstrip("/"),
            appointment_service_url=_env_str("APPOINTMENT_SERVICE_URL", "").rstrip("/"),
            db_path=db_path,
            log_level=_env_str("HEALTHHUB_LOG_LEVEL", "INFO").upper(),
        )

    def secret_name(self, provider_id: str) -> str:
        return self.secret_names.get(provider_id) or f"{self.product}/{self.environment}/{provider_id}-credentials"

    def stage_timeout(self, stage_name: str) -> float:
        return self.stage_timeouts.get(stage_name, self.default_stage_timeout_seconds)
