import random
from abc import ABC, abstractmethod

import structlog

from mediaflow.core.errors import ClassificationError
from mediaflow.models.job import ResultStatus
from mediaflow.schemas.job import ClassificationResult, JobSnapshot

logger = structlog.get_logger()

FRAME_WIDTHS = (1920, 1280, 720)
FRAME_HEIGHTS = (1080, 720, 480)


class Classifier(ABC):
    """Content classification capability used by the final pipeline stage."""

    @abstractmethod
    async def classify(self, job: JobSnapshot) -> ClassificationResult:
        """
        Decide Accepted or Flagged for the job's media.

        Raises ClassificationError when no decision can be made.
        """
        ...


class RandomClassifier(Classifier):
    """
    Placeholder sensitivity analysis.

    Draws from a uniform distribution and flags the media when the draw is
    above ``threshold``. Metadata (duration, dimensions, bitrate, codec) is
    simulated the same way until a real probe is plugged in.
    """

    def __init__(self, threshold: float = 0.7, rng: random.Random | None = None) -> None:
        if not 0 <= threshold <= 1:
            raise ValueError(f"threshold must be between 0 and 1, got {threshold}")
        self.threshold = threshold
        self._rng = rng or random.Random()

    async def classify(self, job: JobSnapshot) -> ClassificationResult:
        try:
            draw = self._rng.random()
            metadata = {
                "duration": self._rng.randrange(10, 310),
                "width": self._rng.choice(FRAME_WIDTHS),
                "height": self._rng.choice(FRAME_HEIGHTS),
                "bitrate": self._rng.randrange(1000, 6000),
                "codec": "h264",
            }
        except Exception as e:
            raise ClassificationError(f"Sensitivity analysis failed: {e}") from e

        status = ResultStatus.FLAGGED if draw > self.threshold else ResultStatus.ACCEPTED
        logger.info("media_classified", job_id=job.id, result_status=status.value, draw=round(draw, 3))
        return ClassificationResult(result_status=status, metadata=metadata)
