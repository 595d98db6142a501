from __future__ import annotations

from typing import Any

import httpx

from healthhub_ai_core.errors import AuthError, MalformedResponseError
from healthhub_ai_core.models import Credential

from .base import ProviderAdapter, coerce_completion_text, http_timeout, response_json
from .collaborators import TOOL_DEFINITIONS, CollaboratorClient

_TOOL_FOLLOW_UP = (
    "Please provide a friendly and informative response based on this information. "
    "If an appointment was created, confirm the details to the user."
)


class OpenAICompletionAdapter(ProviderAdapter):
    name = "completion"
    provider_id = "openai"

    def __init__(
        self,
        *,
        api_base: str,
        model: str,
        collaborators: CollaboratorClient | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.collaborators = collaborators
        self._transport = transport

    def _post(self, client: httpx.Client, api_key: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        response = client.post(f"{self.api_base}/chat/completions", headers=headers, json=payload)
        return response_json(response, self.provider_id)

    def _call(self, stage_input: dict[str, Any], credential: Credential, timeout: float) -> dict[str, Any]:
        api_key = credential.get("api_key")
        if not api_key:
            raise AuthError("OpenAI credential has no api_key.", provider_id=self.provider_id)
        messages = list(stage_input.get("messages") or [])
        if not messages:
            raise MalformedResponseError("Completion stage built no messages.", provider_id=self.provider_id)

        payload: dict[str, Any] = {
            "model": self.model,
            "temperature": float(stage_input.get("temperature", 0.2)),
            "messages": messages,
        }
        use_tools = bool(stage_input.get("use_tools")) and self.collaborators is not None
        if use_tools:
            payload["tools"] = TOOL_DEFINITIONS
            payload["tool_choice"] = "auto"

        with httpx.Client(timeout=http_timeout(timeout), transport=self._transport) as client:
            completion = self._post(client, api_key, payload)
            choices = completion.get("choices")
            if not isinstance(choices, list) or not choices:
                raise MalformedResponseError("Completion response has no choices.", provider_id=self.provider_id)
            message = choices[0].get("message") or {}
            tool_calls = (message.get("tool_calls") or []) if use_tools else []
            if not tool_calls:
                return {"text": coerce_completion_text(completion).strip(), "model": completion.get("model") or self.model}

            executed: list[dict[str, Any]] = []
            followup_messages = messages + [message]
            for call in tool_calls:
                function = call.get("function") or {}
                tool_name = str(function.get("name") or "")
                result = self.collaborators.run_tool(
                    tool_name, function.get("arguments"), patient_id=stage_input.get("patient_id")
                )
                executed.append({"name": tool_name, "arguments": function.get("arguments"), "result": result})
                followup_messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": result})
            followup_messages.append({"role": "user", "content": _TOOL_FOLLOW_UP})

            final = self._post(
                client,
                api_key,
                {"model": self.model, "temperature": payload["temperature"], "messages": followup_messages},
            )
        return {
            "text": coerce_completion_text(final).strip(),
            "model": final.get("model") or self.model,
            "tool_calls": executed,
        }
