"""NSFW detection: request execution and completion delivery.

``execute`` runs one canonical image through the model and extracts the
designated label's confidence. ``NsfwDetector`` schedules that work on the
inference executor and delivers the outcome through one of three call
conventions:

- callback: ``check(image, on_complete)`` returns immediately and calls
  ``on_complete`` exactly once with a ``DetectionOutcome``;
- await: ``await check_async(image)`` returns the confidence or raises;
- blocking: ``check_sync(image)`` does the same for synchronous callers.

The await and blocking forms are bridges over the callback form. If the
callback is never invoked they wait forever; there is no timeout and no
cancellation of an in-flight inference.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nsfwdetect.ml.errors import DetectionError, ExecutionFailed, NoMatchingLabel
from nsfwdetect.ml.model import DESIGNATED_LABEL
from nsfwdetect.ml.preprocessing import normalize

if TYPE_CHECKING:
    from collections.abc import Callable
    from concurrent.futures import Executor

    from nsfwdetect.ml.environment import ExecutionMode
    from nsfwdetect.ml.model import ClassificationModel
    from nsfwdetect.ml.preprocessing import CanonicalImage, PixelBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    """Detection succeeded. ``confidence`` is 0.0 for safe up to 1.0 for explicit content."""

    confidence: float


@dataclass(frozen=True)
class Failure:
    """Detection failed with ``error``."""

    error: DetectionError


DetectionOutcome = Success | Failure


def execute(image: CanonicalImage, model: ClassificationModel, mode: ExecutionMode) -> float:
    """Run a single inference request and return the designated label's confidence.

    Raises:
        ExecutionFailed: If the backend raised while running the request, or
            reported a score outside [0, 1].
        NoMatchingLabel: If the result set has no designated label.
    """
    try:
        observations = model.classify(image, mode)
    except Exception as exc:
        raise ExecutionFailed(exc) from exc

    for observation in observations:
        if observation.label == DESIGNATED_LABEL:
            confidence = observation.confidence
            # Also rejects NaN.
            if not 0.0 <= confidence <= 1.0:
                raise ExecutionFailed(ValueError(f"backend reported confidence outside [0, 1]: {confidence}"))
            return confidence

    logger.error(
        "Model returned no %r observation (labels=%s); deployed model does not match the label contract",
        DESIGNATED_LABEL,
        [observation.label for observation in observations],
    )
    raise NoMatchingLabel


class Continuation:
    """One-shot completion cell.

    Forwards the first outcome to ``resume``. Any later call is a bug in the
    caller of the handler: it is logged and raises ``RuntimeError``.
    """

    def __init__(self, resume: Callable[[DetectionOutcome], None]) -> None:
        self._resume = resume
        self._lock = threading.Lock()
        self._resolved = False

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._resolved

    def __call__(self, outcome: DetectionOutcome) -> None:
        with self._lock:
            if self._resolved:
                logger.error("Completion delivered more than once, dropping %r", outcome)
                raise RuntimeError("continuation resumed more than once")
            self._resolved = True
        self._resume(outcome)


def _unwrap(outcome: DetectionOutcome) -> float:
    if isinstance(outcome, Failure):
        raise outcome.error
    return outcome.confidence


class NsfwDetector:
    """Checks images for explicit content against a shared model handle."""

    def __init__(self, model: ClassificationModel, mode: ExecutionMode, executor: Executor) -> None:
        self._model = model
        self._mode = mode
        self._executor = executor

    @property
    def mode(self) -> ExecutionMode:
        """Execution mode used for every request of this detector."""
        return self._mode

    # -- Callback form ------------------------------------------------------

    def check(self, image: object, on_complete: Callable[[DetectionOutcome], None]) -> None:
        """Schedule a check of ``image`` and return immediately."""
        self._submit(lambda: normalize(image), on_complete)

    def check_pixel_buffer(self, buffer: PixelBuffer, on_complete: Callable[[DetectionOutcome], None]) -> None:
        """Schedule a check of a pixel buffer, bypassing normalization."""
        self._submit(lambda: buffer, on_complete)

    # -- Await form ---------------------------------------------------------

    async def check_async(self, image: object) -> float:
        """Check ``image`` and return its confidence.

        Raises:
            DetectionError: The error carried by a failed outcome.
        """
        return await self._bridge_async(self.check, image)

    async def check_pixel_buffer_async(self, buffer: PixelBuffer) -> float:
        """Await form of ``check_pixel_buffer``."""
        return await self._bridge_async(self.check_pixel_buffer, buffer)

    # -- Blocking form ------------------------------------------------------

    def check_sync(self, image: object) -> float:
        """Check ``image``, blocking the calling thread until the outcome arrives.

        Must not be called from one of the executor's own worker threads.
        """
        future: Future[DetectionOutcome] = Future()
        self.check(image, Continuation(future.set_result))
        return _unwrap(future.result())

    # -- Internal -----------------------------------------------------------

    async def _bridge_async(self, submit: Callable[[object, Continuation], None], image: object) -> float:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[DetectionOutcome] = loop.create_future()

        def resolve(outcome: DetectionOutcome) -> None:
            if not future.done():
                future.set_result(outcome)

        submit(image, Continuation(lambda outcome: loop.call_soon_threadsafe(resolve, outcome)))
        return _unwrap(await future)

    def _submit(self, prepare: Callable[[], CanonicalImage], on_complete: Callable[[DetectionOutcome], None]) -> None:
        try:
            self._executor.submit(self._run, prepare, on_complete)
        except RuntimeError as exc:
            # Executor is shut down; report on the calling thread.
            self._deliver(on_complete, Failure(ExecutionFailed(exc)))

    def _run(self, prepare: Callable[[], CanonicalImage], on_complete: Callable[[DetectionOutcome], None]) -> None:
        outcome: DetectionOutcome
        try:
            confidence = execute(prepare(), self._model, self._mode)
        except DetectionError as exc:
            outcome = Failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error while checking image")
            outcome = Failure(ExecutionFailed(exc))
        else:
            outcome = Success(confidence)
        self._deliver(on_complete, outcome)

    @staticmethod
    def _deliver(on_complete: Callable[[DetectionOutcome], None], outcome: DetectionOutcome) -> None:
        try:
            on_complete(outcome)
        except Exception:
            logger.exception("Completion handler raised")
