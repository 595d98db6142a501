from __future__ import annotations

import logging
from typing import Any, Callable

from .credentials import CredentialResolver
from .errors import CredentialUnavailable
from .executor import ProviderAdapter, StageExecutor
from .hooks import HookRunner
from .logging import get_logger, log_with_context
from .models import Deadline, PipelineRequest, PipelineResult, StageResult, overall_degradation
from .registry import PipelineRegistry, StageDefinition
from .time_utils import to_iso, utc_now

logger = get_logger(__name__)


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        registry: PipelineRegistry,
        adapters: dict[str, ProviderAdapter],
        executor: StageExecutor,
        credentials: CredentialResolver,
        stage_timeout: Callable[[str], float],
        budget_seconds: float,
        hooks: HookRunner | None = None,
    ) -> None:
        self.registry = registry
        self.adapters = adapters
        self.executor = executor
        self.credentials = credentials
        self.stage_timeout = stage_timeout
        self.budget_seconds = budget_seconds
        self.hooks = hooks or HookRunner()
        self._validate()

    def _validate(self) -> None:
        for pipeline in self.registry.all():
            for stage in pipeline.stages:
                if stage.adapter not in self.adapters:
                    raise ValueError(f"Stage '{stage.name}' of '{pipeline.kind}' needs unregistered adapter '{stage.adapter}'.")

    def _adapter(self, stage: StageDefinition) -> ProviderAdapter:
        return self.adapters[stage.adapter]

    def provider_ids(self, stages: list[StageDefinition]) -> list[str]:
        seen: list[str] = []
        for stage in stages:
            provider_id = self._adapter(stage).provider_id
            if provider_id not in seen:
                seen.append(provider_id)
        return seen

    def preflight(self, stages: list[StageDefinition], deadline: Deadline | None = None) -> None:
        for provider_id in self.provider_ids(stages):
            self.credentials.get(provider_id, timeout=deadline.remaining() if deadline is not None else None)

    def execute(self, request: PipelineRequest, *, budget_seconds: float | None = None) -> PipelineResult:
        pipeline = self.registry.resolve(request.pipeline_kind)
        stages = pipeline.stages_for(request)
        started_at = to_iso(utc_now())
        budget = self.budget_seconds if budget_seconds is None else min(budget_seconds, self.budget_seconds)
        deadline = Deadline(budget)

        try:
            self.preflight(stages, deadline)
        except CredentialUnavailable as exc:
            log_with_context(
                logger,
                logging.ERROR,
                "pipeline aborted before first stage",
                request_id=request.request_id,
                pipeline=pipeline.kind,
                provider=exc.provider_id,
            )
            raise

        outputs: dict[str, dict[str, Any]] = {}
        results: list[StageResult] = []
        for stage in stages:
            result = self._run_stage(request, stage, outputs, deadline)
            results.append(result)
            outputs[stage.name] = result.output
            self.hooks.run_after_stage(request, result)

        result = PipelineResult(
            request_id=request.request_id,
            pipeline_kind=pipeline.kind,
            stages=tuple(results),
            overall_degradation=overall_degradation(results),
            final_output=pipeline.finalize(request, outputs),
            started_at=started_at,
            finished_at=to_iso(utc_now()),
        )
        log_with_context(
            logger,
            logging.INFO,
            "pipeline finished",
            request_id=request.request_id,
            pipeline=pipeline.kind,
            stages=len(results),
            degradation=result.overall_degradation,
        )
        self.hooks.run_after_run(request, result)
        return result

    def _run_stage(
        self,
        request: PipelineRequest,
        stage: StageDefinition,
        outputs: dict[str, dict[str, Any]],
        deadline: Deadline,
    ) -> StageResult:
        adapter = self._adapter(stage)
        try:
            stage_input = stage.build_input(request, outputs)
        except Exception as exc:
            log_with_context(
                logger,
                logging.ERROR,
                "stage input could not be built",
                request_id=request.request_id,
                stage=stage.name,
                error=repr(exc),
            )
            return StageResult(
                stage_name=stage.name,
                status="failed",
                output=self.executor.fallback.synthesize(stage.name, {}),
                provider_latency_ms=0,
                error_detail={"kind": "internal", "provider_id": adapter.provider_id, "message": str(exc)},
            )
        return self.executor.run(
            stage,
            adapter,
            stage_input,
            timeout_seconds=self.stage_timeout(stage.name),
            deadline=deadline,
            request_id=request.request_id,
        )
