from __future__ import annotations

from typing import Callable

from .models import PipelineRequest, PipelineResult, StageResult


AfterStageHook = Callable[[PipelineRequest, StageResult], None]
AfterRunHook = Callable[[PipelineRequest, PipelineResult], None]


class HookRunner:
    def __init__(self) -> None:
        self._after_stage_hooks: list[AfterStageHook] = []
        self._after_run_hooks: list[AfterRunHook] = []

    def add_after_stage(self, hook: AfterStageHook) -> None:
        self._after_stage_hooks.append(hook)

    def add_after_run(self, hook: AfterRunHook) -> None:
        self._after_run_hooks.append(hook)

    def run_after_stage(self, request: PipelineRequest, result: StageResult) -> None:
        for hook in self._after_stage_hooks:
            hook(request, result)

    def run_after_run(self, request: PipelineRequest, result: PipelineResult) -> None:
        for hook in self._after_run_hooks:
            hook(request, result)
