from __future__ import annotations

import base64
import binascii
import threading
from typing import Any, Callable

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from healthhub_ai_core.errors import (
    AuthError,
    MalformedResponseError,
    ProviderError,
    QuotaError,
    TransientError,
)
from healthhub_ai_core.models import Credential, is_english

from .base import ProviderAdapter, classify_http_error, http_timeout, normalize_confidence

_AUTH_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "AuthFailure",
    "ExpiredToken",
    "ExpiredTokenException",
    "IncompleteSignature",
    "InvalidClientTokenId",
    "InvalidSignatureException",
    "MissingAuthenticationToken",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
}

_QUOTA_CODES = {
    "LimitExceededException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceQuotaExceededException",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}

POLLY_VOICES = {
    "en": "Joanna",
    "es": "Lupe",
    "fr": "Celine",
    "de": "Marlene",
    "it": "Carla",
    "pt": "Camila",
}

_COMPREHEND_LANGUAGES = {"ar", "de", "en", "es", "fr", "hi", "it", "ja", "ko", "pt", "zh"}
_COMPREHEND_TEXT_LIMIT = 5000
_COMPREHEND_MEDICAL_TEXT_LIMIT = 20000
_POLLY_TEXT_LIMIT = 3000
_REKOGNITION_MAX_LABELS = 20
_REKOGNITION_MIN_CONFIDENCE = 70


def classify_aws_error(exc: Exception, provider_id: str = "aws-ai") -> ProviderError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error") or {}
        code = str(error.get("Code") or "")
        message = str(error.get("Message") or code or exc)
        status = (exc.response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
        if code in _AUTH_CODES or status in {401, 403}:
            return AuthError(message, provider_id=provider_id, status_code=status)
        if code in _QUOTA_CODES or status == 429:
            return QuotaError(message, provider_id=provider_id, status_code=status)
        return TransientError(f"{code}: {message}" if code else message, provider_id=provider_id, status_code=status)
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return TransientError(str(exc), provider_id=provider_id, timed_out=True)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return AuthError(str(exc), provider_id=provider_id)
    if isinstance(exc, EndpointConnectionError):
        return TransientError(str(exc), provider_id=provider_id)
    return TransientError(str(exc), provider_id=provider_id)


def language_code(language: str | None) -> str:
    return (language or "en").strip().lower().split("-")[0] or "en"


def comprehend_language(language: str | None) -> str:
    code = language_code(language)
    return code if code in _COMPREHEND_LANGUAGES else "en"


class AwsClientFactory:
    """Builds boto3 clients from an `aws-ai` credential with timeouts bound to the stage budget."""

    def __init__(self, *, overrides: dict[str, Any] | None = None) -> None:
        self._overrides = dict(overrides or {})
        self._clients: dict[tuple[Any, ...], Any] = {}
        self._lock = threading.Lock()

    def client(self, service: str, credential: Credential, timeout: float) -> Any:
        if service in self._overrides:
            return self._overrides[service]
        region = credential.get("region", "us-east-1")
        read_timeout = max(1, int(round(timeout)))
        key = (
            service,
            region,
            credential.get("access_key_id"),
            credential.get("secret_access_key"),
            credential.get("session_token"),
            read_timeout,
        )
        with self._lock:
            cached = self._clients.get(key)
            if cached is None:
                cached = boto3.client(
                    service,
                    region_name=region,
                    aws_access_key_id=credential.get("access_key_id") or None,
                    aws_secret_access_key=credential.get("secret_access_key") or None,
                    aws_session_token=credential.get("session_token") or None,
                    config=Config(
                        connect_timeout=min(5, read_timeout),
                        read_timeout=read_timeout,
                        retries={"max_attempts": 1},
                    ),
                )
                self._clients[key] = cached
            return cached


class AwsAdapter(ProviderAdapter):
    provider_id = "aws-ai"

    def __init__(self, clients: AwsClientFactory) -> None:
        self.clients = clients

    def _aws(self, fn: Callable[..., dict[str, Any]], **kwargs: Any) -> dict[str, Any]:
        try:
            return fn(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise classify_aws_error(exc, self.provider_id) from exc


class TextractOcrAdapter(AwsAdapter):
    name = "ocr"

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        raw = stage_input.get("document_base64") or ""
        try:
            document_bytes = base64.b64decode(raw, validate=False) if raw else b""
        except (binascii.Error, ValueError) as exc:
            raise MalformedResponseError("Document payload is not valid base64.", provider_id=self.provider_id) from exc
        if not document_bytes:
            provided = str(stage_input.get("text") or "").strip()
            if provided:
                return {
                    "text": provided,
                    "lines": [{"text": line, "confidence": 1.0} for line in provided.splitlines() if line.strip()],
                    "confidence": 0.95,
                    "method": "provided_text",
                }
            raise MalformedResponseError("No document content was provided.", provider_id=self.provider_id)

        client = self.clients.client("textract", credential, timeout)
        result = self._aws(client.detect_document_text, Document={"Bytes": document_bytes})
        blocks = result.get("Blocks")
        if not isinstance(blocks, list):
            raise MalformedResponseError("Textract response has no blocks.", provider_id=self.provider_id)
        lines = [
            {"text": block.get("Text") or "", "confidence": normalize_confidence(block.get("Confidence"), 100.0)}
            for block in blocks
            if isinstance(block, dict) and block.get("BlockType") == "LINE" and block.get("Text")
        ]
        confidence = round(sum(line["confidence"] for line in lines) / len(lines), 4) if lines else 0.0
        return {
            "text": "\n".join(line["text"] for line in lines),
            "lines": lines,
            "confidence": confidence,
            "method": "textract",
        }


class ClinicalNlpAdapter(AwsAdapter):
    """Comprehend Medical entities plus Comprehend sentiment and key phrases."""

    name = "clinical-nlp"

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        text = str(stage_input.get("text") or "").strip()
        operations = list(stage_input.get("operations") or ["entities"])
        lang = comprehend_language(stage_input.get("language_code"))
        output: dict[str, Any] = {}

        if "entities" in operations:
            output["entities"] = self._entities(text, credential, timeout) if text else []
        if "sentiment" in operations:
            output.update(self._sentiment(text, lang, credential, timeout) if text else {"sentiment": "NEUTRAL", "scores": {}})
        if "key_phrases" in operations:
            output["key_phrases"] = self._key_phrases(text, lang, credential, timeout) if text else []
        return output

    def _entities(self, text: str, credential: Credential, timeout: float) -> list[dict[str, Any]]:
        client = self.clients.client("comprehendmedical", credential, timeout)
        result = self._aws(client.detect_entities_v2, Text=text[:_COMPREHEND_MEDICAL_TEXT_LIMIT])
        entities = result.get("Entities")
        if not isinstance(entities, list):
            raise MalformedResponseError("Comprehend Medical returned no entities.", provider_id=self.provider_id)
        return [
            {
                "text": entity.get("Text") or "",
                "category": entity.get("Category") or "",
                "type": entity.get("Type") or "",
                "confidence": normalize_confidence(entity.get("Score")),
                "traits": [trait.get("Name") for trait in entity.get("Traits") or [] if isinstance(trait, dict)],
            }
            for entity in entities
            if isinstance(entity, dict)
        ]

    def _sentiment(self, text: str, lang: str, credential: Credential, timeout: float) -> dict[str, Any]:
        client = self.clients.client("comprehend", credential, timeout)
        result = self._aws(client.detect_sentiment, Text=text[:_COMPREHEND_TEXT_LIMIT], LanguageCode=lang)
        sentiment = result.get("Sentiment")
        if not sentiment:
            raise MalformedResponseError("Comprehend returned no sentiment.", provider_id=self.provider_id)
        scores = result.get("SentimentScore") or {}
        return {
            "sentiment": sentiment,
            "scores": {
                "positive": normalize_confidence(scores.get("Positive")),
                "negative": normalize_confidence(scores.get("Negative")),
                "neutral": normalize_confidence(scores.get("Neutral")),
                "mixed": normalize_confidence(scores.get("Mixed")),
            },
        }

    def _key_phrases(self, text: str, lang: str, credential: Credential, timeout: float) -> list[dict[str, Any]]:
        client = self.clients.client("comprehend", credential, timeout)
        result = self._aws(client.detect_key_phrases, Text=text[:_COMPREHEND_TEXT_LIMIT], LanguageCode=lang)
        return [
            {"text": phrase.get("Text") or "", "confidence": normalize_confidence(phrase.get("Score"))}
            for phrase in result.get("KeyPhrases") or []
            if isinstance(phrase, dict)
        ]


class SpeechOutAdapter(AwsAdapter):
    """Translate into the requested language and optionally synthesize audio with Polly."""

    name = "speech-out"

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        text = str(stage_input.get("text") or "").strip()
        target = str(stage_input.get("target_language") or "en")
        lang = language_code(target)
        output: dict[str, Any] = {"language": target, "translated": None, "audio_base64": None, "voice_id": None}
        if not text:
            return output

        spoken = text
        if not is_english(target):
            client = self.clients.client("translate", credential, timeout)
            result = self._aws(
                client.translate_text, Text=text, SourceLanguageCode="auto", TargetLanguageCode=lang
            )
            translated = result.get("TranslatedText")
            if not isinstance(translated, str):
                raise MalformedResponseError("Translate returned no text.", provider_id=self.provider_id)
            output["translated"] = translated
            spoken = translated

        if stage_input.get("synthesize"):
            voice_id = POLLY_VOICES.get(lang, POLLY_VOICES["en"])
            client = self.clients.client("polly", credential, timeout)
            result = self._aws(
                client.synthesize_speech, Text=spoken[:_POLLY_TEXT_LIMIT], OutputFormat="mp3", VoiceId=voice_id
            )
            stream = result.get("AudioStream")
            if stream is None:
                raise MalformedResponseError("No audio stream received from Polly.", provider_id=self.provider_id)
            try:
                audio = stream.read()
            except (BotoCoreError, OSError) as exc:
                raise TransientError(f"Polly audio stream failed: {exc}", provider_id=self.provider_id) from exc
            output["audio_base64"] = base64.b64encode(audio).decode("ascii")
            output["voice_id"] = voice_id
        return output


class RekognitionLabelsAdapter(AwsAdapter):
    """Second opinion on image labels from Rekognition `detect_labels`; confidences arrive on a 0-100 scale."""

    name = "image-labels"

    def __init__(self, clients: AwsClientFactory, *, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(clients)
        self._transport = transport

    def _image_bytes(self, stage_input: dict[str, Any], timeout: float) -> bytes:
        raw = stage_input.get("image_base64") or ""
        if raw:
            try:
                return base64.b64decode(raw, validate=False)
            except (binascii.Error, ValueError) as exc:
                raise MalformedResponseError("Image payload is not valid base64.", provider_id=self.provider_id) from exc
        url = str(stage_input.get("image_url") or "")
        if not url:
            raise MalformedResponseError("No image content was provided.", provider_id=self.provider_id)
        # Rekognition takes bytes or S3 objects only, so URLs are downloaded first.
        with httpx.Client(timeout=http_timeout(timeout), transport=self._transport, follow_redirects=True) as client:
            response = client.get(url)
        if response.status_code >= 400:
            raise classify_http_error(response, self.provider_id)
        return response.content

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        image_bytes = self._image_bytes(stage_input, timeout)
        if not image_bytes:
            raise MalformedResponseError("Image payload is empty.", provider_id=self.provider_id)
        client = self.clients.client("rekognition", credential, timeout)
        result = self._aws(
            client.detect_labels,
            Image={"Bytes": image_bytes},
            MaxLabels=_REKOGNITION_MAX_LABELS,
            MinConfidence=_REKOGNITION_MIN_CONFIDENCE,
        )
        labels = result.get("Labels")
        if not isinstance(labels, list):
            raise MalformedResponseError("Rekognition response has no labels.", provider_id=self.provider_id)
        return {
            "labels": [
                {"label": label.get("Name") or "", "confidence": normalize_confidence(label.get("Confidence"), 100.0)}
                for label in labels
                if isinstance(label, dict)
            ]
        }
