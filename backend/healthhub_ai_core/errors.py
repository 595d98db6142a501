from __future__ import annotations

from typing import Any


class HealthHubAIError(Exception):
    pass


class CredentialUnavailable(HealthHubAIError):
    def __init__(self, provider_id: str, message: str | None = None) -> None:
        self.provider_id = provider_id
        super().__init__(message or f"Credentials for '{provider_id}' are unavailable from the secret store and environment.")

    def as_error(self) -> dict[str, Any]:
        return {"code": "credential_unavailable", "provider_id": self.provider_id, "message": str(self)}


class SecretStoreError(HealthHubAIError):
    pass


class UnknownPipelineError(HealthHubAIError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown pipeline"


class InvalidTransitionError(HealthHubAIError):
    pass


class ProviderError(HealthHubAIError):
    kind = "provider"

    def __init__(self, message: str, *, provider_id: str = "unknown", status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code

    def as_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"kind": self.kind, "provider_id": self.provider_id, "message": str(self)}
        if self.status_code is not None:
            detail["status_code"] = self.status_code
        return detail


class AuthError(ProviderError):
    kind = "auth"


class QuotaError(ProviderError):
    kind = "quota"


class TransientError(ProviderError):
    kind = "transient"

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "unknown",
        status_code: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, provider_id=provider_id, status_code=status_code)
        self.timed_out = timed_out
        if timed_out:
            self.kind = "timeout"


class MalformedResponseError(ProviderError):
    kind = "malformed"
