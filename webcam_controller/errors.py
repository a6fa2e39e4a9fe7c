"""
Exceptions raised by the webcam controller
"""


class ControllerError(Exception):
    """Base class for all controller errors"""


class InvalidLabel(ControllerError, IndexError):
    """Label outside [0, num_classes)"""

    def __init__(self, label, num_classes: int):
        super().__init__(f"Label {label} is out of range for {num_classes} classes")
        self.label = label
        self.num_classes = num_classes


class ShapeMismatch(ControllerError, ValueError):
    """Example shape differs from the examples already collected"""


class EmptyDataset(ControllerError):
    """Training requested before any example was added"""

    def __init__(self):
        super().__init__("Add some examples before training!")


class DegenerateBatchSize(ControllerError):
    """Batch size fraction rounds to an unusable batch size"""

    def __init__(self, batch_size):
        super().__init__(f"Batch size is {batch_size}. Please choose a non-zero fraction.")
        self.batch_size = batch_size


class NoTrainedHead(ControllerError):
    """Prediction requested before a training run finished"""

    def __init__(self):
        super().__init__("Train a model before predicting!")


class NoDeviceAvailable(ControllerError):
    """The camera could not be opened or stopped delivering frames"""


class InvalidHyperparameters(ControllerError, ValueError):
    """Training settings outside their usable range"""
