from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

import httpx

from healthhub_ai_core.errors import AuthError, MalformedResponseError
from healthhub_ai_core.logging import get_logger, log_with_context
from healthhub_ai_core.models import Credential
from healthhub_ai_core.speech_session import SessionHandle, SpeechSessionManager

from .base import ProviderAdapter, provider_error_message

logger = get_logger(__name__)

AZURE_REST_ENDPOINT = (
    "https://{region}.stt.speech.microsoft.com/speech/recognition/conversation/cognitiveservices/v1"
)


def _speech_key(credential: Credential) -> tuple[str, str]:
    key = credential.get("speech_key")
    region = credential.get("speech_region")
    if not key or not region:
        raise AuthError("Azure Speech credential needs speech_key and speech_region.", provider_id="azure-speech")
    return key, region


class AzureSdkRecognizer:
    """Continuous recognition through the Azure Speech SDK, forwarding SDK events to a session handle."""

    def __init__(self) -> None:
        self._recognizer: Any = None

    def start(self, audio: bytes, language: str, credential: Credential, listener: SessionHandle) -> None:
        import azure.cognitiveservices.speech as speechsdk

        key, region = _speech_key(credential)
        speech_config = speechsdk.SpeechConfig(subscription=key, region=region)
        speech_config.speech_recognition_language = language

        push_stream = speechsdk.audio.PushAudioInputStream()
        audio_config = speechsdk.audio.AudioConfig(stream=push_stream)
        recognizer = speechsdk.SpeechRecognizer(speech_config=speech_config, audio_config=audio_config)

        def handle_recognizing(evt: Any) -> None:
            listener.on_recognizing(evt.result.text)

        def handle_recognized(evt: Any) -> None:
            if evt.result.reason == speechsdk.ResultReason.RecognizedSpeech:
                listener.on_recognized(evt.result.text)

        def handle_canceled(evt: Any) -> None:
            details = evt.cancellation_details
            if details.reason != speechsdk.CancellationReason.Error:
                listener.on_canceled(error_kind=None)
                return
            code = details.error_code
            if code in {speechsdk.CancellationErrorCode.AuthenticationFailure, speechsdk.CancellationErrorCode.Forbidden}:
                kind = "auth"
            elif code == speechsdk.CancellationErrorCode.TooManyRequests:
                kind = "quota"
            else:
                kind = "transient"
            listener.on_canceled(error_kind=kind, details=str(details.error_details or code))

        recognizer.recognizing.connect(handle_recognizing)
        recognizer.recognized.connect(handle_recognized)
        recognizer.canceled.connect(handle_canceled)
        recognizer.session_stopped.connect(lambda evt: listener.on_session_stopped())
        self._recognizer = recognizer

        recognizer.start_continuous_recognition()
        push_stream.write(audio)
        push_stream.close()

    def stop(self) -> None:
        if self._recognizer is not None:
            self._recognizer.stop_continuous_recognition_async()
            self._recognizer = None


class AzureRestRecognizer:
    """Short-audio REST recognition replayed as recognized + session-stopped events."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 25.0,
        endpoint_template: str = AZURE_REST_ENDPOINT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.endpoint_template = endpoint_template
        self._transport = transport

    def start(self, audio: bytes, language: str, credential: Credential, listener: SessionHandle) -> None:
        key, region = _speech_key(credential)
        headers = {
            "Ocp-Apim-Subscription-Key": key,
            "Content-Type": "audio/wav; codecs=audio/pcm; samplerate=16000",
            "Accept": "application/json",
        }
        url = self.endpoint_template.format(region=region)
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(8.0, self.timeout_seconds)),
                transport=self._transport,
            ) as client:
                response = client.post(url, params={"language": language}, headers=headers, content=audio)
        except httpx.HTTPError as exc:
            listener.on_canceled(error_kind="transient", details=f"{exc.__class__.__name__}: {exc}")
            return

        if response.status_code in {401, 403}:
            listener.on_canceled(error_kind="auth", details=provider_error_message(response))
            return
        if response.status_code == 429:
            listener.on_canceled(error_kind="quota", details=provider_error_message(response))
            return
        if response.status_code >= 400:
            listener.on_canceled(error_kind="transient", details=provider_error_message(response))
            return

        try:
            payload = response.json()
        except ValueError:
            listener.on_canceled(error_kind="malformed", details="Speech REST response was not JSON.")
            return
        status = str(payload.get("RecognitionStatus") or "") if isinstance(payload, dict) else ""
        if status == "Success":
            listener.on_recognized(str(payload.get("DisplayText") or ""))
            listener.on_session_stopped()
        elif status in {"NoMatch", "InitialSilenceTimeout", "BabbleTimeout"}:
            listener.on_session_stopped()
        else:
            listener.on_canceled(error_kind="transient", details=f"RecognitionStatus={status or 'missing'}")

    def stop(self) -> None:
        return None


class SpeechToTextAdapter(ProviderAdapter):
    name = "speech-to-text"
    provider_id = "azure-speech"

    # Leaves room for the session to hand back accumulated text before the stage deadline.
    _RETURN_MARGIN_SECONDS = 0.5

    def __init__(self, manager: SpeechSessionManager) -> None:
        self.manager = manager

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        raw = stage_input.get("audio_base64") or ""
        try:
            audio = base64.b64decode(raw, validate=False) if raw else b""
        except (binascii.Error, ValueError) as exc:
            raise MalformedResponseError("Audio payload is not valid base64.", provider_id=self.provider_id) from exc
        if not audio:
            raise MalformedResponseError("No audio content was provided.", provider_id=self.provider_id)

        language = str(stage_input.get("language") or "en-US")
        outcome = self.manager.transcribe(
            audio,
            language=language,
            credential=credential,
            timeout_seconds=max(0.1, timeout - self._RETURN_MARGIN_SECONDS),
        )
        log_with_context(
            logger,
            logging.INFO,
            "transcription finished",
            session_id=outcome.session_id,
            state=outcome.state,
            fragments=outcome.fragment_count,
            source=outcome.source,
        )
        return outcome.as_output()
