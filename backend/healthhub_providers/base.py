from __future__ import annotations

import logging
from typing import Any

import httpx

from healthhub_ai_core.errors import (
    AuthError,
    MalformedResponseError,
    ProviderError,
    QuotaError,
    TransientError,
)
from healthhub_ai_core.logging import get_logger, log_with_context
from healthhub_ai_core.models import Credential

logger = get_logger(__name__)


def provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def classify_http_error(response: httpx.Response, provider_id: str) -> ProviderError:
    status = response.status_code
    message = provider_error_message(response)
    if status in {401, 403}:
        return AuthError(message, provider_id=provider_id, status_code=status)
    if status == 429:
        return QuotaError(message, provider_id=provider_id, status_code=status)
    return TransientError(message, provider_id=provider_id, status_code=status)


def response_json(response: httpx.Response, provider_id: str) -> dict[str, Any]:
    if response.status_code >= 400:
        raise classify_http_error(response, provider_id)
    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError("Provider returned invalid JSON.", provider_id=provider_id) from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError("Provider returned a non-object JSON body.", provider_id=provider_id)
    return payload


def normalize_confidence(value: Any, scale: float = 1.0) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if scale and scale != 1.0:
        score = score / scale
    return round(max(0.0, min(score, 1.0)), 4)


def coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


class ProviderAdapter:
    """Base for adapters: subclasses implement `_call` and raise ProviderError subclasses."""

    name = "adapter"
    provider_id = "unknown"

    def invoke(
        self, stage_input: dict[str, Any], credential: Credential, timeout: float
    ) -> tuple[dict[str, Any] | None, ProviderError | None]:
        try:
            return self._call(stage_input, credential, timeout), None
        except ProviderError as exc:
            if exc.provider_id == "unknown":
                exc.provider_id = self.provider_id
            log_with_context(
                logger,
                logging.WARNING,
                "provider call failed",
                adapter=self.name,
                provider=self.provider_id,
                error_kind=exc.kind,
                status_code=exc.status_code,
            )
            return None, exc
        except httpx.TimeoutException as exc:
            return None, TransientError(
                f"{self.provider_id} timed out: {exc.__class__.__name__}", provider_id=self.provider_id, timed_out=True
            )
        except httpx.HTTPError as exc:
            return None, TransientError(f"Failed to reach {self.provider_id}: {exc}", provider_id=self.provider_id)

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        raise NotImplementedError


def http_timeout(timeout: float) -> httpx.Timeout:
    return httpx.Timeout(timeout, connect=min(8.0, timeout))
