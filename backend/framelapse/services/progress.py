"""
Progress reporting and cooperative cancellation for stabilization runs.

The caller's callback receives a StabilizationProgress per pass. Returning
False from it, or setting the optional cancel event, asks the run to stop; the
stabilizer checks this between passes only.
"""

import threading
from typing import Callable, List, Optional

from framelapse.models.settings import StabilizationMode
from framelapse.models.stabilization import (
    StabilizationProgress,
    StabilizationResult,
    StabilizationStage,
)

ProgressCallback = Callable[[StabilizationProgress], Optional[bool]]


class ProgressReporter:
    """Emits progress events for one run and tracks cancellation requests."""

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        max_passes: int,
        mode: StabilizationMode,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.callback = callback
        self.max_passes = max_passes
        self.mode = mode
        self.cancel_event = cancel_event
        self._cancel_requested = False

    @property
    def cancelled(self) -> bool:
        if self._cancel_requested:
            return True
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _emit(self, progress: StabilizationProgress) -> None:
        if self.callback is None:
            return
        if self.callback(progress) is False:
            self._cancel_requested = True

    def started(self) -> None:
        self._emit(StabilizationProgress.initial(self.max_passes, self.mode))

    def pass_started(
        self,
        pass_number: int,
        stage: StabilizationStage,
        score: Optional[float],
    ) -> None:
        self._emit(StabilizationProgress.for_pass(pass_number, self.max_passes, stage, score, self.mode))

    def completed(self, result: StabilizationResult) -> None:
        self._emit(StabilizationProgress.completed(result, self.max_passes))


class ProgressRecorder:
    """Callback that keeps every event; handy for API responses and tests."""

    def __init__(self, cancel_after: Optional[int] = None):
        self.events: List[StabilizationProgress] = []
        self.cancel_after = cancel_after

    def __call__(self, progress: StabilizationProgress) -> Optional[bool]:
        self.events.append(progress)
        if self.cancel_after is not None and len(self.events) >= self.cancel_after:
            return False
        return None
