"""
UI sinks for the webcam controller
ControllerUI keeps the display state (status text, example totals, thumbnails,
last prediction); KeyboardGameUI also presses the predicted arrow key
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch

from .feature_extractor import tensor_to_image

logger = logging.getLogger(__name__)

# --- Configuration ---
# up, down, left and right are labels 0, 1, 2, 3 respectively
CONTROLS = ['up', 'down', 'left', 'right']
NUM_CLASSES = len(CONTROLS)


class ControllerUI:
    """Display state driven by the controller session"""

    def __init__(self, controls: Sequence[str] = CONTROLS):
        self.controls: List[str] = list(controls)
        self.totals = [0] * len(self.controls)
        self.thumbnails: Dict[int, np.ndarray] = {}
        self.status = ""
        self.predicting = False
        self.last_prediction: Optional[Tuple[int, float]] = None
        self.webcam_error: Optional[str] = None

    def train_status(self, status: str):
        self.status = status
        logger.debug(status)

    def set_example_count(self, label: int, count: int):
        self.totals[label] = count

    def draw_thumb(self, image: torch.Tensor, label: int):
        """Keep the latest example image of a label as its thumbnail"""
        self.thumbnails[label] = tensor_to_image(image)

    def clear_thumb(self, label: int):
        self.thumbnails.pop(label, None)

    def predict_class(self, label: int, confidence: float):
        self.last_prediction = (label, confidence)

    def confidence_text(self) -> str:
        if self.last_prediction is None:
            return ""
        label, confidence = self.last_prediction
        return f"Gesture: {self.controls[label]} ({confidence * 100:.1f}%)"

    def is_predicting(self):
        self.predicting = True

    def done_predicting(self):
        self.predicting = False

    def no_webcam(self, message: str):
        self.webcam_error = message
        logger.error(f"No webcam found: {message}")


class KeyboardGameUI(ControllerUI):
    """Presses the arrow key of every confident prediction"""

    def __init__(self, controls: Sequence[str] = CONTROLS, min_confidence: float = 0.0):
        super().__init__(controls)
        # pyautogui needs a display, only import it when keys are actually sent
        import pyautogui
        pyautogui.PAUSE = 0
        self._pyautogui = pyautogui
        self.min_confidence = min_confidence
        self.keys_pressed = 0

    def predict_class(self, label: int, confidence: float):
        super().predict_class(label, confidence)
        if confidence < self.min_confidence:
            return
        self._pyautogui.press(self.controls[label])
        self.keys_pressed += 1
