"""
Controller session
Owns the dataset, the current classifier head and the prediction loop, and
wires webcam capture -> feature extraction -> training -> prediction
"""

import asyncio
import logging
from typing import Dict, Optional

from .camera_manager import CameraSource
from .controller_dataset import ControllerDataset
from .errors import DegenerateBatchSize, EmptyDataset, NoDeviceAvailable, NoTrainedHead
from .inference_loop import InferenceLoop
from .training import (Hyperparameters, TrainedHead, TrainingMode, TrainingSession,
                       get_training_settings)
from .ui import NUM_CLASSES, ControllerUI

logger = logging.getLogger(__name__)


class ControllerSession:
    """One webcam controller session, passed to the UI handlers"""

    def __init__(self, camera: CameraSource, extractor, ui: Optional[ControllerUI] = None,
                 num_classes: int = NUM_CLASSES, trainer: Optional[TrainingSession] = None,
                 training_mode: TrainingMode = TrainingMode.BALANCED,
                 custom_settings: Optional[Hyperparameters] = None):
        self.camera = camera
        self.extractor = extractor
        self.ui = ui or ControllerUI()
        self.trainer = trainer or TrainingSession()
        self.training_mode = training_mode
        self.custom_settings = custom_settings

        # The dataset object where we will store activations
        self.dataset = ControllerDataset(num_classes)
        self.head: Optional[TrainedHead] = None
        self.capture_enabled = False
        self.training = False

        self.loop = InferenceLoop(
            camera, extractor,
            head_provider=lambda: self.head,
            sink=self.ui.predict_class,
            on_start=self.ui.is_predicting,
            on_stop=self.ui.done_predicting,
        )

    @property
    def num_classes(self) -> int:
        return self.dataset.num_classes

    @property
    def is_predicting(self) -> bool:
        return self.loop.is_running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> bool:
        """
        Start the webcam and warm up the feature extractor. Without a webcam
        the session keeps running with capture disabled.
        """
        try:
            self.camera.start()
            # Warm up the model so the first example collected from the webcam is quick
            frame = await self.camera.capture()
        except NoDeviceAvailable as e:
            logger.error(f"Webcam unavailable, capture disabled: {e}")
            self.camera.stop()
            self.capture_enabled = False
            self.ui.no_webcam(str(e))
            return False

        self.extractor.warm_up(frame)
        self.capture_enabled = True
        return True

    async def close(self):
        """Stop predicting, release the webcam and drop the collected examples"""
        self.loop.disarm()
        await self.loop.wait_stopped()
        self.camera.stop()
        self.capture_enabled = False
        self.dataset.reset()
        self.head = None
        logger.info("Session closed")

    # ------------------------------------------------------------------
    # Examples
    # ------------------------------------------------------------------
    async def add_example(self, label: int) -> bool:
        """Read a frame from the webcam and associate it with ``label``"""
        self.dataset.check_label(label)
        if not self.capture_enabled:
            logger.debug(f"Capture disabled, ignoring example for label {label}")
            return False

        frame = await self.camera.capture()
        image = self.extractor.preprocess(frame)
        self.dataset.add_example(self.extractor.extract(image), label)

        # Draw the preview thumbnail
        self.ui.draw_thumb(image, label)
        self.ui.set_example_count(label, self.dataset.count_for_label(label))
        return True

    def redo_example(self, label: int):
        """Throw away every example of ``label``"""
        self.dataset.clear_label(label)
        self.ui.clear_thumb(label)
        self.ui.set_example_count(label, 0)

    def example_counts(self) -> Dict[int, int]:
        return dict(enumerate(self.dataset.counts()))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def training_settings(self) -> Hyperparameters:
        return get_training_settings(self.training_mode, self.custom_settings)

    async def train(self, hyperparameters: Optional[Hyperparameters] = None) -> TrainedHead:
        """
        Stop predicting, fit a new head and swap it in. The previous head keeps
        serving until training returns.
        """
        hyperparameters = hyperparameters or self.training_settings()
        self.training = True
        try:
            self.ui.train_status("Training...")
            self.loop.disarm()
            await self.loop.wait_stopped()
            # Give the UI a chance to show the status before the first batch
            await asyncio.sleep(0)

            head = await self.trainer.train_async(self.dataset, hyperparameters,
                                                 on_batch_end=self._on_batch_end)
        except (EmptyDataset, DegenerateBatchSize) as e:
            self.ui.train_status(str(e))
            raise
        finally:
            self.training = False

        self.head = head
        if head.final_loss is not None:
            self.ui.train_status(f"Done! Loss: {head.final_loss:.5f}")
        else:
            self.ui.train_status("Done!")
        return head

    def _on_batch_end(self, step: int, logs: Dict[str, float]):
        self.ui.train_status(f"Loss: {logs['loss']:.5f}")

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------
    def start_predicting(self) -> Optional[asyncio.Task]:
        if self.training:
            logger.warning("Training in progress, not starting predictions")
            return None
        if not self.capture_enabled:
            logger.warning("Capture disabled, not starting predictions")
            return None
        try:
            return self.loop.arm()
        except NoTrainedHead as e:
            self.ui.train_status(str(e))
            raise

    def stop_predicting(self):
        self.loop.disarm()
