"""
Ordered processing stages for one media job.

Every stage declares the progress checkpoint reached when it completes.
Work stages simulate format validation, metadata extraction and content
analysis; the final stage asks the classifier for the moderation decision
and is the only stage that produces a result.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from mediaflow.core.clock import Clock
from mediaflow.core.errors import ClassificationError, InvalidPipelineError
from mediaflow.models.job import ResultStatus
from mediaflow.schemas.job import ClassificationResult, JobSnapshot
from mediaflow.services.classifier import Classifier

DEFAULT_WORK_STAGES = (
    ("validate", 20, "Validating video format..."),
    ("extract_metadata", 40, "Extracting metadata..."),
    ("analyze_content", 60, "Analyzing content..."),
    ("sensitivity_checks", 80, "Running sensitivity checks..."),
    ("finalize", 95, "Finalizing analysis..."),
)


@dataclass
class StageContext:
    job: JobSnapshot
    clock: Clock
    stage_delay: float


class Stage(ABC):
    produces_result = False

    def __init__(self, name: str, target_progress: int, message: str = "") -> None:
        self.name = name
        self.target_progress = target_progress
        self.message = message

    @abstractmethod
    async def run(self, ctx: StageContext) -> ClassificationResult | None:
        ...

    def describe(self, result: ClassificationResult | None = None) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}@{self.target_progress}>"


class WorkStage(Stage):
    """Simulated processing step; takes the configured per-stage delay."""

    async def run(self, ctx: StageContext) -> None:
        await ctx.clock.sleep(ctx.stage_delay)
        return None


class ClassificationStage(Stage):
    produces_result = True

    def __init__(self, classifier: Classifier, name: str = "classify", target_progress: int = 100) -> None:
        super().__init__(name, target_progress)
        self.classifier = classifier

    async def run(self, ctx: StageContext) -> ClassificationResult:
        result = await self.classifier.classify(ctx.job)
        if result.result_status == ResultStatus.PENDING:
            raise ClassificationError("Classifier returned no decision")
        return result

    def describe(self, result: ClassificationResult | None = None) -> str:
        if result is None:
            return "Analysis complete."
        return f"Analysis complete. Status: {result.result_status.value.lower()}"


class Pipeline:
    """Validated, immutable stage sequence."""

    def __init__(self, stages: Sequence[Stage]) -> None:
        self._stages = tuple(stages)
        self._validate()

    def _validate(self) -> None:
        if not self._stages:
            raise InvalidPipelineError("Pipeline needs at least one stage")

        previous = 0
        for stage in self._stages:
            if not previous < stage.target_progress <= 100:
                raise InvalidPipelineError(
                    f"Stage {stage.name} target {stage.target_progress} must be "
                    f"greater than {previous} and at most 100"
                )
            previous = stage.target_progress

        final = self._stages[-1]
        if final.target_progress != 100:
            raise InvalidPipelineError(f"Final stage {final.name} must reach 100")
        if not final.produces_result:
            raise InvalidPipelineError(f"Final stage {final.name} must produce the result")
        if any(stage.produces_result for stage in self._stages[:-1]):
            raise InvalidPipelineError("Only the final stage may produce the result")

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def checkpoints(self) -> list[int]:
        return [stage.target_progress for stage in self._stages]

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)


def build_default_pipeline(classifier: Classifier) -> Pipeline:
    stages: list[Stage] = [WorkStage(name, target, message) for name, target, message in DEFAULT_WORK_STAGES]
    stages.append(ClassificationStage(classifier))
    return Pipeline(stages)
