from .config import ServiceSettings
from .credentials import AwsSecretsManagerStore, CredentialResolver, DisabledSecretStore
from .errors import (
    AuthError,
    CredentialUnavailable,
    HealthHubAIError,
    InvalidTransitionError,
    MalformedResponseError,
    ProviderError,
    QuotaError,
    SecretStoreError,
    TransientError,
    UnknownPipelineError,
)
from .executor import ProviderCooldowns, StageExecutor
from .fallback import FallbackSynthesizer
from .hooks import HookRunner
from .models import (
    Credential,
    Deadline,
    PipelineRequest,
    PipelineResult,
    SpeechSession,
    StageResult,
    SubjectContext,
)
from .orchestrator import PipelineOrchestrator
from .pipelines import build_default_registry
from .registry import PipelineDefinition, PipelineRegistry, StageDefinition
from .speech_session import SpeechSessionManager, TranscriptionOutcome

__all__ = [
    "AuthError",
    "AwsSecretsManagerStore",
    "Credential",
    "CredentialResolver",
    "CredentialUnavailable",
    "Deadline",
    "DisabledSecretStore",
    "FallbackSynthesizer",
    "HealthHubAIError",
    "HookRunner",
    "InvalidTransitionError",
    "MalformedResponseError",
    "PipelineDefinition",
    "PipelineOrchestrator",
    "PipelineRegistry",
    "PipelineRequest",
    "PipelineResult",
    "ProviderCooldowns",
    "ProviderError",
    "QuotaError",
    "SecretStoreError",
    "ServiceSettings",
    "SpeechSession",
    "SpeechSessionManager",
    "StageDefinition",
    "StageExecutor",
    "StageResult",
    "SubjectContext",
    "TransientError",
    "TranscriptionOutcome",
    "UnknownPipelineError",
    "build_default_registry",
]
