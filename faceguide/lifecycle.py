"""Staged model loading with per-stage timeouts and progress reporting."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from faceguide.errors import InitializationError

LOGGER = logging.getLogger("faceguide.lifecycle")

ProgressCallback = Callable[[str, int, str], None]

COMPLETE_STAGE = "complete"


@dataclass(frozen=True)
class LoadStage:
    """One named loading step. `progress` is the percentage reported when it starts."""

    name: str
    loader: Callable[[], None]
    progress: int
    message: str


class ModelPipeline:
    """Runs loading stages in order, each under its own timeout.

    Any stage failure or timeout aborts the whole pipeline with an
    InitializationError naming the stage. There is no retry.
    """

    def __init__(
        self,
        stages: Sequence[LoadStage],
        timeout_s: float = 30.0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        last = -1
        for stage in stages:
            if not 0 <= stage.progress < 100 or stage.progress <= last:
                raise ValueError(
                    f"Stage progress must be strictly increasing within [0, 100); got {stage.progress} "
                    f"for '{stage.name}' after {last}"
                )
            last = stage.progress
        self.stages: List[LoadStage] = list(stages)
        self.timeout_s = timeout_s
        self.on_progress = on_progress
        self.completed: List[str] = []

    @property
    def ready(self) -> bool:
        return len(self.completed) == len(self.stages)

    def run(self) -> None:
        for stage in self.stages:
            self._emit(stage.name, stage.progress, stage.message)
            self._run_stage(stage)
            self.completed.append(stage.name)
            LOGGER.info("Stage %s loaded", stage.name)
        self._emit(COMPLETE_STAGE, 100, "Ready!")

    def _run_stage(self, stage: LoadStage) -> None:
        # Daemon worker: a timed-out loader is abandoned, never awaited, and
        # does not hold up interpreter exit.
        failure: List[BaseException] = []

        def _target() -> None:
            try:
                stage.loader()
            except Exception as exc:  # re-raised on the calling thread
                failure.append(exc)

        worker = threading.Thread(target=_target, name=f"load-{stage.name}", daemon=True)
        worker.start()
        worker.join(self.timeout_s)
        if worker.is_alive():
            LOGGER.error("Stage %s timed out after %.1fs", stage.name, self.timeout_s)
            raise InitializationError(stage.name, f"timed out after {self.timeout_s:g}s", timed_out=True)
        if failure:
            exc = failure[0]
            LOGGER.error("Stage %s failed: %s", stage.name, exc)
            raise InitializationError(stage.name, str(exc) or type(exc).__name__) from exc

    def _emit(self, name: str, progress: int, message: str) -> None:
        LOGGER.debug("Init progress %3d%% %s: %s", progress, name, message)
        if self.on_progress is not None:
            self.on_progress(name, progress, message)
