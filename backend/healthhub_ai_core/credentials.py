from __future__ import annotations

import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol

from .errors import CredentialUnavailable, SecretStoreError
from .logging import get_logger, log_with_context
from .models import Credential

logger = get_logger(__name__)


class SecretStore(Protocol):
    def get_secret(self, name: str) -> dict[str, Any]: ...


class AwsSecretsManagerStore:
    def __init__(self, region: str, *, client: Any | None = None, timeout_seconds: float = 5.0) -> None:
        self._region = region
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._client_lock = threading.Lock()

    def _secrets_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                import boto3
                from botocore.config import Config

                self._client = boto3.client(
                    "secretsmanager",
                    region_name=self._region,
                    config=Config(
                        connect_timeout=self._timeout_seconds,
                        read_timeout=self._timeout_seconds,
                        retries={"max_attempts": 2},
                    ),
                )
            return self._client

    def get_secret(self, name: str) -> dict[str, Any]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            result = self._secrets_client().get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as exc:
            raise SecretStoreError(f"Secret lookup failed for {name}: {exc}") from exc
        try:
            payload = json.loads(result.get("SecretString") or "{}")
        except json.JSONDecodeError as exc:
            raise SecretStoreError(f"Secret {name} is not a JSON object.") from exc
        if not isinstance(payload, dict):
            raise SecretStoreError(f"Secret {name} is not a JSON object.")
        return payload


class DisabledSecretStore:
    def get_secret(self, name: str) -> dict[str, Any]:
        raise SecretStoreError(f"Secret store is disabled; cannot read {name}.")


@dataclass(frozen=True)
class EnvFallback:
    fields: Mapping[str, tuple[str, ...]]
    required: tuple[str, ...]
    unescape_newlines: tuple[str, ...] = ()
    defaults: Mapping[str, str] = field(default_factory=dict)


ENV_FALLBACKS: dict[str, EnvFallback] = {
    "openai": EnvFallback(
        fields={"api_key": ("OPEN_AI_KEY", "OPENAI_API_KEY"), "assistant_id": ("ASSISTANT_ID",)},
        required=("api_key",),
    ),
    "azure-speech": EnvFallback(
        fields={"speech_key": ("AZURE_SPEECH_KEY",), "speech_region": ("AZURE_SPEECH_REGION",)},
        required=("speech_key", "speech_region"),
    ),
    "google-vision": EnvFallback(
        fields={
            "api_key": ("GOOGLE_VISION_API_KEY",),
            "project_id": ("GOOGLE_PROJECT_ID",),
            "client_email": ("GOOGLE_CLIENT_EMAIL",),
            "private_key": ("GOOGLE_PRIVATE_KEY",),
        },
        required=("project_id",),
        unescape_newlines=("private_key",),
    ),
    "aws-ai": EnvFallback(
        fields={
            "region": ("AWS_REGION", "AWS_DEFAULT_REGION"),
            "access_key_id": ("AWS_ACCESS_KEY_ID",),
            "secret_access_key": ("AWS_SECRET_ACCESS_KEY",),
            "session_token": ("AWS_SESSION_TOKEN",),
        },
        required=("region",),
        defaults={"region": "us-east-1"},
    ),
}

# Secret-store payloads may use either the canonical key or the provider's own naming.
_REQUIRED_ANY = {
    "google-vision": ({"project_id"}, {"api_key"}),
}


def _has_required(provider_id: str, value: Mapping[str, Any]) -> bool:
    present = {key for key, item in value.items() if str(item or "").strip()}
    alternatives = _REQUIRED_ANY.get(provider_id)
    if alternatives:
        return any(group <= present for group in alternatives)
    env_fallback = ENV_FALLBACKS.get(provider_id)
    if env_fallback is None:
        return bool(present)
    return set(env_fallback.required) <= present


def credential_values_from_env(provider_id: str, environ: Mapping[str, str] | None = None) -> dict[str, str] | None:
    env_fallback = ENV_FALLBACKS.get(provider_id)
    if env_fallback is None:
        return None
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}
    for key, env_names in env_fallback.fields.items():
        for env_name in env_names:
            raw = (env.get(env_name) or "").strip()
            if raw:
                values[key] = raw.replace("\\n", "\n") if key in env_fallback.unescape_newlines else raw
                break
        else:
            if key in env_fallback.defaults:
                values[key] = env_fallback.defaults[key]
    if not _has_required(provider_id, values):
        return None
    return values


class CredentialResolver:
    """Process-wide credential cache with secret-store lookup and environment fallback.

    The cache is an immutable mapping that is swapped wholesale on every write, so
    readers take no lock and always see either the previous or the next credential.
    A per-provider refresh lock keeps concurrent misses from stampeding the store.

    Callers holding a run deadline pass ``timeout``; the store lookup is then bounded
    by it and skipped entirely once it reaches zero.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        *,
        secret_name_for: Callable[[str], str],
        ttl_seconds: float = 300.0,
        refresh_margin_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._store = secret_store
        self._secret_name_for = secret_name_for
        self._ttl = ttl_seconds
        self._refresh_margin = min(refresh_margin_seconds, ttl_seconds)
        self._clock = clock
        self._environ = environ
        self._cache: Mapping[str, Credential] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self._refresh_locks: dict[str, threading.Lock] = {}
        self._fetch_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="secret-fetch")

    @property
    def known_providers(self) -> list[str]:
        return sorted(ENV_FALLBACKS)

    def get(self, provider_id: str, *, timeout: float | None = None) -> Credential:
        now = self._clock()
        cached = self._cache.get(provider_id)
        if cached is not None and cached.is_fresh(now):
            if cached.ttl - cached.age(now) > self._refresh_margin:
                return cached
            lock = self._refresh_lock(provider_id)
            if not lock.acquire(blocking=False):
                return cached
            try:
                return self._refresh(provider_id, current=cached, timeout=timeout)
            finally:
                lock.release()

        with self._refresh_lock(provider_id):
            cached = self._cache.get(provider_id)
            if cached is not None and cached.is_fresh(self._clock()):
                return cached
            return self._refresh(provider_id, current=None, timeout=timeout)

    def invalidate(self, provider_id: str | None = None) -> None:
        with self._write_lock:
            if provider_id is None:
                self._cache = MappingProxyType({})
            else:
                remaining = {key: value for key, value in self._cache.items() if key != provider_id}
                self._cache = MappingProxyType(remaining)
        log_with_context(logger, logging.INFO, "credential cache invalidated", provider=provider_id or "all")

    def snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        cache = self._cache
        status: dict[str, dict[str, Any]] = {}
        for provider_id in self.known_providers:
            credential = cache.get(provider_id)
            status[provider_id] = {
                "cached": credential is not None and credential.is_fresh(now),
                "age_seconds": round(credential.age(now), 1) if credential else None,
                "source": credential.source if credential else None,
            }
        return status

    def _refresh_lock(self, provider_id: str) -> threading.Lock:
        lock = self._refresh_locks.get(provider_id)
        if lock is None:
            with self._write_lock:
                lock = self._refresh_locks.setdefault(provider_id, threading.Lock())
        return lock

    def _publish(self, credential: Credential) -> Credential:
        with self._write_lock:
            updated = dict(self._cache)
            updated[credential.provider_id] = credential
            self._cache = MappingProxyType(updated)
        return credential

    def _fetch(self, secret_name: str, timeout: float | None) -> dict[str, Any]:
        if timeout is None:
            return self._store.get_secret(secret_name)
        if timeout <= 0:
            raise SecretStoreError(f"No time left in the request budget to read {secret_name}.")
        future = self._fetch_pool.submit(self._store.get_secret, secret_name)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise SecretStoreError(f"Secret lookup for {secret_name} exceeded {timeout:.2f}s.") from exc

    def _refresh(self, provider_id: str, *, current: Credential | None, timeout: float | None = None) -> Credential:
        secret_name = self._secret_name_for(provider_id)
        try:
            value = self._fetch(secret_name, timeout)
            if not _has_required(provider_id, value):
                raise SecretStoreError(f"Secret {secret_name} is missing required fields.")
        except SecretStoreError as exc:
            log_with_context(
                logger,
                logging.WARNING,
                "secret store lookup failed",
                provider=provider_id,
                secret_name=secret_name,
                error=str(exc),
            )
        else:
            log_with_context(
                logger, logging.INFO, "credential fetched", provider=provider_id, secret_name=secret_name, source="secret_store"
            )
            return self._publish(
                Credential.build(
                    provider_id=provider_id,
                    secret_name=secret_name,
                    value=value,
                    ttl=self._ttl,
                    source="secret_store",
                    fetched_at=self._clock(),
                )
            )

        # A failed refresh-ahead keeps the value that is still inside its TTL.
        if current is not None and current.is_fresh(self._clock()):
            return current

        env_values = credential_values_from_env(provider_id, self._environ)
        if env_values is not None:
            log_with_context(
                logger, logging.INFO, "credential fetched", provider=provider_id, secret_name=secret_name, source="environment"
            )
            return self._publish(
                Credential.build(
                    provider_id=provider_id,
                    secret_name=secret_name,
                    value=env_values,
                    ttl=self._ttl,
                    source="environment",
                    fetched_at=self._clock(),
                )
            )
        raise CredentialUnavailable(provider_id)
