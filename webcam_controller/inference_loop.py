"""
Continuous prediction loop
Pulls a frame, runs it through the frozen extractor and the trained head,
and hands (label, confidence) to a sink until disarmed
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np
import torch

from .errors import NoTrainedHead
from .training import TrainedHead

logger = logging.getLogger(__name__)


class LoopState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class InferenceLoop:
    """
    Two-state prediction loop on the asyncio event loop.

    ``arm()`` starts it, ``disarm()`` asks it to stop; the flag is checked at
    the top of every iteration so the loop ends after at most one more frame.
    Only one loop task exists at a time: arming again while the previous task
    is still finishing its last iteration keeps that task running.
    """

    def __init__(self, camera, extractor, head_provider: Callable[[], Optional[TrainedHead]],
                 sink: Callable[[int, float], None],
                 on_start: Optional[Callable[[], None]] = None,
                 on_stop: Optional[Callable[[], None]] = None):
        self.camera = camera
        self.extractor = extractor
        self.head_provider = head_provider
        self.sink = sink
        self.on_start = on_start
        self.on_stop = on_stop

        self.state = LoopState.IDLE
        self.iterations = 0
        self.last_error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.RUNNING

    def arm(self) -> asyncio.Task:
        """Start predicting. Must be called from a running event loop."""
        if self.state is LoopState.RUNNING:
            return self._task
        if self.head_provider() is None:
            raise NoTrainedHead()

        self.state = LoopState.RUNNING
        if self.on_start:
            self.on_start()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            self._task.add_done_callback(self._on_task_done)
        logger.info("Prediction loop armed")
        return self._task

    def disarm(self):
        """Stop predicting after the current iteration"""
        if self.state is LoopState.RUNNING:
            self.state = LoopState.IDLE
            logger.info("Prediction loop disarmed")

    async def wait_stopped(self):
        """Wait until the loop task has exited"""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait([task])

    async def _run(self):
        try:
            while self.state is LoopState.RUNNING:
                frame = await self.camera.capture()
                if self.state is not LoopState.RUNNING:
                    break

                label, confidence = self._classify(frame)
                self.iterations += 1
                self.sink(label, confidence)

                # Let frame capture and the UI run before the next iteration
                await asyncio.sleep(0)
        finally:
            self.state = LoopState.IDLE
            if self.on_stop:
                self.on_stop()

    def _on_task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.last_error = error
            logger.error(f"Prediction loop stopped: {error}")

    def _classify(self, frame: np.ndarray) -> Tuple[int, float]:
        """One prediction; every tensor created here is released on return"""
        head = self.head_provider()
        if head is None:
            raise NoTrainedHead()

        with torch.no_grad():
            image = self.extractor.preprocess(frame)
            embeddings = self.extractor.extract(image)
            return head.classify(embeddings)
