from .aws import (
    AwsClientFactory,
    ClinicalNlpAdapter,
    RekognitionLabelsAdapter,
    SpeechOutAdapter,
    TextractOcrAdapter,
    classify_aws_error,
)
from .base import ProviderAdapter, classify_http_error, normalize_confidence
from .collaborators import TOOL_DEFINITIONS, CollaboratorClient
from .completion import OpenAICompletionAdapter
from .speech import AzureRestRecognizer, AzureSdkRecognizer, SpeechToTextAdapter
from .vision import GoogleVisionAdapter

__all__ = [
    "TOOL_DEFINITIONS",
    "AwsClientFactory",
    "AzureRestRecognizer",
    "AzureSdkRecognizer",
    "ClinicalNlpAdapter",
    "CollaboratorClient",
    "GoogleVisionAdapter",
    "OpenAICompletionAdapter",
    "ProviderAdapter",
    "RekognitionLabelsAdapter",
    "SpeechOutAdapter",
    "SpeechToTextAdapter",
    "TextractOcrAdapter",
    "classify_aws_error",
    "classify_http_error",
    "normalize_confidence",
]
