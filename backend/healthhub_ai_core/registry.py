from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from .errors import UnknownPipelineError
from .models import PipelineRequest


StageOutputs = dict[str, dict[str, Any]]
InputBuilder = Callable[[PipelineRequest, StageOutputs], dict[str, Any]]
Normalizer = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]
Finalizer = Callable[[PipelineRequest, StageOutputs], dict[str, Any]]
StagePredicate = Callable[[PipelineRequest], bool]


@dataclass(frozen=True)
class StageDefinition:
    name: str
    adapter: str
    build_input: InputBuilder
    normalize: Normalizer | None = None
    applies: StagePredicate | None = None

    def applies_to(self, request: PipelineRequest) -> bool:
        return self.applies is None or bool(self.applies(request))


@dataclass(frozen=True)
class PipelineDefinition:
    kind: str
    stages: tuple[StageDefinition, ...]
    finalize: Finalizer

    def stages_for(self, request: PipelineRequest) -> list[StageDefinition]:
        return [stage for stage in self.stages if stage.applies_to(request)]

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]


class PipelineRegistry:
    def __init__(self) -> None:
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._aliases: dict[str, str] = {}

    def register(self, pipeline: PipelineDefinition) -> None:
        self._pipelines[pipeline.kind] = pipeline

    def add_alias(self, alias: str, target: str) -> None:
        self._aliases[alias] = target

    def resolve(self, kind: str) -> PipelineDefinition:
        normalized = (kind or "").strip().lower()
        canonical = self._aliases.get(normalized, normalized)
        pipeline = self._pipelines.get(canonical)
        if not pipeline:
            raise UnknownPipelineError(f"Pipeline not found: {kind}")
        return pipeline

    def list_names(self) -> list[str]:
        return sorted(self._pipelines.keys())

    def all(self) -> list[PipelineDefinition]:
        return [self._pipelines[name] for name in self.list_names()]
