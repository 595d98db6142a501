from __future__ import annotations

import threading
import time
from typing import Any

import httpx
import jwt

from healthhub_ai_core.errors import AuthError, MalformedResponseError
from healthhub_ai_core.models import Credential

from .base import ProviderAdapter, http_timeout, normalize_confidence, response_json

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
VISION_SCOPE = "https://www.googleapis.com/auth/cloud-vision"


class GoogleVisionAdapter(ProviderAdapter):
    """Label, text and object detection through the Vision `images:annotate` REST call.

    Accepts either an API key or a service account (project_id, client_email,
    private_key); the service account is exchanged for a short-lived bearer token.
    """

    name = "vision"
    provider_id = "google-vision"

    def __init__(
        self,
        *,
        api_base: str,
        token_url: str = GOOGLE_TOKEN_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.token_url = token_url
        self._transport = transport
        self._token_lock = threading.Lock()
        self._token: tuple[str, str, float] | None = None

    def _access_token(self, client: httpx.Client, credential: Credential) -> str:
        client_email = credential.get("client_email")
        private_key = credential.get("private_key")
        if not client_email or not private_key:
            raise AuthError("Service account credential is incomplete.", provider_id=self.provider_id)
        with self._token_lock:
            now = time.time()
            if self._token and self._token[0] == client_email and self._token[2] - 60 > now:
                return self._token[1]
            try:
                assertion = jwt.encode(
                    {
                        "iss": client_email,
                        "scope": VISION_SCOPE,
                        "aud": self.token_url,
                        "iat": int(now),
                        "exp": int(now) + 3600,
                    },
                    private_key,
                    algorithm="RS256",
                )
            except (ValueError, TypeError, jwt.PyJWTError) as exc:
                raise AuthError(f"Service account key could not sign a token: {exc}", provider_id=self.provider_id) from exc
            response = client.post(
                self.token_url,
                data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
            )
            if response.status_code in {400, 401, 403}:
                raise AuthError("Service account token exchange was rejected.", provider_id=self.provider_id)
            payload = response_json(response, self.provider_id)
            token = str(payload.get("access_token") or "")
            if not token:
                raise MalformedResponseError("Token exchange returned no access_token.", provider_id=self.provider_id)
            self._token = (client_email, token, now + float(payload.get("expires_in") or 3600))
            return token

    def _image_source(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        if stage_input.get("image_base64"):
            return {"content": stage_input["image_base64"]}
        if stage_input.get("image_url"):
            return {"source": {"imageUri": stage_input["image_url"]}}
        raise MalformedResponseError("No image content was provided.", provider_id=self.provider_id)

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        max_results = int(stage_input.get("max_results") or 10)
        body = {
            "requests": [
                {
                    "image": self._image_source(stage_input),
                    "features": [
                        {"type": "LABEL_DETECTION", "maxResults": max_results},
                        {"type": "TEXT_DETECTION", "maxResults": max_results},
                        {"type": "OBJECT_LOCALIZATION", "maxResults": max_results},
                    ],
                }
            ]
        }
        with httpx.Client(timeout=http_timeout(timeout), transport=self._transport) as client:
            params: dict[str, str] = {}
            headers: dict[str, str] = {"Content-Type": "application/json"}
            api_key = credential.get("api_key")
            if api_key:
                params["key"] = api_key
            else:
                headers["Authorization"] = f"Bearer {self._access_token(client, credential)}"
            response = client.post(f"{self.api_base}/images:annotate", params=params, headers=headers, json=body)
        payload = response_json(response, self.provider_id)
        return self._parse(payload)

    def _parse(self, payload: dict[str, Any]) -> dict[str, Any]:
        responses = payload.get("responses")
        if not isinstance(responses, list) or not responses or not isinstance(responses[0], dict):
            raise MalformedResponseError("Vision response has no annotation results.", provider_id=self.provider_id)
        result = responses[0]
        if isinstance(result.get("error"), dict):
            raise MalformedResponseError(
                str(result["error"].get("message") or "Vision annotation failed."), provider_id=self.provider_id
            )
        labels = [
            {"label": item.get("description") or "", "confidence": normalize_confidence(item.get("score"))}
            for item in result.get("labelAnnotations") or []
            if isinstance(item, dict)
        ]
        text_annotations = [
            item.get("description")
            for item in (result.get("textAnnotations") or [])[:1]
            if isinstance(item, dict) and item.get("description")
        ]
        objects = [
            {"name": item.get("name") or "", "confidence": normalize_confidence(item.get("score"))}
            for item in result.get("localizedObjectAnnotations") or []
            if isinstance(item, dict)
        ]
        return {"labels": labels, "text_annotations": text_annotations, "objects": objects}
