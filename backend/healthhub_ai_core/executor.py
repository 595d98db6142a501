from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Protocol

from .credentials import CredentialResolver
from .errors import CredentialUnavailable, ProviderError, QuotaError, TransientError
from .fallback import FallbackSynthesizer
from .logging import get_logger, log_with_context
from .models import FALLBACK_SOURCE, Credential, Deadline, StageResult
from .registry import StageDefinition

logger = get_logger(__name__)


class ProviderAdapter(Protocol):
    name: str
    provider_id: str

    def invoke(
        self, stage_input: dict[str, Any], credential: Credential, timeout: float
    ) -> tuple[dict[str, Any] | None, ProviderError | None]: ...


class ProviderCooldowns:
    def __init__(self, cooldown_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._until: dict[str, float] = {}
        self._lock = threading.Lock()

    def trip(self, provider_id: str) -> None:
        if self._cooldown_seconds <= 0:
            return
        with self._lock:
            self._until[provider_id] = self._clock() + self._cooldown_seconds

    def remaining(self, provider_id: str) -> float:
        until = self._until.get(provider_id)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())


class StageExecutor:
    """Runs one stage against its provider and always hands back a StageResult.

    Provider errors and timeouts degrade the stage; unexpected exceptions and a
    credential lost mid-run fail it. Either way the output comes from the
    FallbackSynthesizer so later stages still have something to consume.
    """

    def __init__(
        self,
        *,
        credentials: CredentialResolver,
        fallback: FallbackSynthesizer,
        cooldowns: ProviderCooldowns | None = None,
        max_workers: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credentials = credentials
        self.fallback = fallback
        self.cooldowns = cooldowns or ProviderCooldowns(0.0)
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider-call")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def run(
        self,
        stage: StageDefinition,
        adapter: ProviderAdapter,
        stage_input: dict[str, Any],
        *,
        timeout_seconds: float,
        deadline: Deadline | None = None,
        request_id: str | None = None,
    ) -> StageResult:
        started = self._clock()

        if deadline is not None:
            timeout_seconds = deadline.clamp(timeout_seconds)
        if timeout_seconds <= 0:
            return self._budget_exhausted(stage, adapter, stage_input, started, request_id)

        cooling = self.cooldowns.remaining(adapter.provider_id)
        if cooling > 0:
            return self._substitute(
                stage,
                stage_input,
                status="degraded",
                error_detail={
                    "kind": "quota",
                    "provider_id": adapter.provider_id,
                    "message": f"Provider is cooling down after a quota error ({cooling:.0f}s left).",
                },
                started=started,
                request_id=request_id,
            )

        try:
            credential = self.credentials.get(adapter.provider_id, timeout=timeout_seconds)
        except CredentialUnavailable as exc:
            return self._substitute(
                stage,
                stage_input,
                status="failed",
                error_detail={"kind": "credential", "provider_id": adapter.provider_id, "message": str(exc)},
                started=started,
                request_id=request_id,
            )

        if deadline is not None:
            timeout_seconds = deadline.clamp(timeout_seconds)
            if timeout_seconds <= 0:
                return self._budget_exhausted(stage, adapter, stage_input, started, request_id)

        future = self._pool.submit(adapter.invoke, stage_input, credential, timeout_seconds)
        try:
            output, error = future.result(timeout=timeout_seconds)
        except FutureTimeout:
            future.cancel()
            output, error = None, TransientError(
                f"Provider call exceeded {timeout_seconds:.1f}s.",
                provider_id=adapter.provider_id,
                timed_out=True,
            )
        except Exception as exc:
            log_with_context(
                logger,
                logging.ERROR,
                "provider adapter raised",
                request_id=request_id,
                stage=stage.name,
                provider=adapter.provider_id,
                error=repr(exc),
            )
            return self._substitute(
                stage,
                stage_input,
                status="failed",
                error_detail={"kind": "internal", "provider_id": adapter.provider_id, "message": str(exc)},
                started=started,
                request_id=request_id,
            )

        if error is None and not isinstance(output, dict):
            error = TransientError("Provider adapter returned no output.", provider_id=adapter.provider_id)
        if error is not None:
            if isinstance(error, QuotaError):
                self.cooldowns.trip(adapter.provider_id)
            return self._substitute(
                stage, stage_input, status="degraded", error_detail=error.as_detail(), started=started, request_id=request_id
            )

        if stage.normalize is not None:
            try:
                output = stage.normalize(output, stage_input)
            except ProviderError as exc:
                return self._substitute(
                    stage, stage_input, status="degraded", error_detail=exc.as_detail(), started=started, request_id=request_id
                )
            except Exception as exc:
                log_with_context(
                    logger,
                    logging.ERROR,
                    "stage normalizer raised",
                    request_id=request_id,
                    stage=stage.name,
                    error=repr(exc),
                )
                return self._substitute(
                    stage,
                    stage_input,
                    status="failed",
                    error_detail={"kind": "internal", "provider_id": adapter.provider_id, "message": str(exc)},
                    started=started,
                    request_id=request_id,
                )

        output = dict(output)
        if output.get("source") == FALLBACK_SOURCE:
            error_detail = output.pop("degradation", None) or {
                "kind": "fallback",
                "provider_id": adapter.provider_id,
                "message": "Provider returned a substitute result.",
            }
            output["stage"] = stage.name
            return self._finish(stage, "degraded", output, error_detail, started, request_id)

        output["source"] = adapter.provider_id
        return self._finish(stage, "ok", output, None, started, request_id)

    def _budget_exhausted(
        self,
        stage: StageDefinition,
        adapter: ProviderAdapter,
        stage_input: dict[str, Any],
        started: float,
        request_id: str | None,
    ) -> StageResult:
        return self._substitute(
            stage,
            stage_input,
            status="degraded",
            error_detail={
                "kind": "timeout",
                "provider_id": adapter.provider_id,
                "message": "Execution budget exhausted before the provider call.",
            },
            started=started,
            request_id=request_id,
        )

    def _substitute(
        self,
        stage: StageDefinition,
        stage_input: dict[str, Any],
        *,
        status: str,
        error_detail: dict[str, Any],
        started: float,
        request_id: str | None,
    ) -> StageResult:
        output = self.fallback.synthesize(stage.name, stage_input)
        return self._finish(stage, status, output, error_detail, started, request_id)

    def _finish(
        self,
        stage: StageDefinition,
        status: str,
        output: dict[str, Any],
        error_detail: dict[str, Any] | None,
        started: float,
        request_id: str | None,
    ) -> StageResult:
        latency_ms = int(round((self._clock() - started) * 1000))
        log_with_context(
            logger,
            logging.INFO if status == "ok" else logging.WARNING,
            "stage finished",
            request_id=request_id,
            stage=stage.name,
            status=status,
            latency_ms=latency_ms,
            error_kind=(error_detail or {}).get("kind"),
        )
        return StageResult(
            stage_name=stage.name,
            status=status,
            output=output,
            provider_latency_ms=latency_ms,
            error_detail=error_detail,
        )
