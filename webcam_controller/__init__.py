"""
Webcam Controller

Train a small classifier on top of a frozen MobileNet from webcam examples
and turn its live predictions into arrow key presses.
"""

from .controller_dataset import ControllerDataset
from .errors import (
    ControllerError,
    DegenerateBatchSize,
    EmptyDataset,
    InvalidLabel,
    NoDeviceAvailable,
    NoTrainedHead,
    ShapeMismatch,
)
from .inference_loop import InferenceLoop, LoopState
from .session import ControllerSession
from .training import (
    Hyperparameters,
    TrainedHead,
    TrainingMode,
    TrainingSession,
    get_training_settings,
)

__version__ = "0.1.0"
