"""
Classifier head training
Builds a small dense head on top of the frozen feature extractor and fits it
on the examples collected in the controller dataset
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader, TensorDataset
from tqdm import tqdm

from .controller_dataset import ControllerDataset
from .errors import DegenerateBatchSize, EmptyDataset, InvalidHyperparameters

logger = logging.getLogger(__name__)

# --- Configuration ---
EPSILON = 1e-7  # probability clipping for the cross-entropy

BatchEndCallback = Callable[[int, Dict[str, float]], None]


class TrainingMode(Enum):
    FAST = "fast"
    ACCURATE = "accurate"
    BALANCED = "balanced"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Hyperparameters:
    learning_rate: float
    batch_size_fraction: float
    epochs: int
    dense_units: int

    def __post_init__(self):
        if not (math.isfinite(self.learning_rate) and self.learning_rate > 0):
            raise InvalidHyperparameters(f"Learning rate must be positive, got {self.learning_rate}")
        if not 0 < self.batch_size_fraction <= 1:
            raise InvalidHyperparameters(
                f"Batch size fraction must be in (0, 1], got {self.batch_size_fraction}")
        if self.epochs < 1:
            raise InvalidHyperparameters(f"Epochs must be at least 1, got {self.epochs}")
        if self.dense_units < 1:
            raise InvalidHyperparameters(f"Dense units must be at least 1, got {self.dense_units}")


PRESETS = {
    # fewer epochs and a simpler model: lower accuracy, faster training
    TrainingMode.FAST: Hyperparameters(learning_rate=0.0001, batch_size_fraction=0.4, epochs=10, dense_units=10),
    # full batch, more epochs and a bigger model
    TrainingMode.ACCURATE: Hyperparameters(learning_rate=0.0001, batch_size_fraction=1.0, epochs=40, dense_units=200),
    TrainingMode.BALANCED: Hyperparameters(learning_rate=0.0001, batch_size_fraction=0.4, epochs=20, dense_units=100),
}


def get_training_settings(mode: TrainingMode = TrainingMode.BALANCED,
                          custom: Optional[Hyperparameters] = None) -> Hyperparameters:
    """Resolve a training mode to its hyperparameters"""
    if mode is TrainingMode.CUSTOM:
        if custom is None:
            raise ValueError("Custom training mode needs explicit hyperparameters")
        return custom
    return PRESETS[mode]


def compute_batch_size(num_examples: int, batch_size_fraction: float) -> int:
    """
    The batch size is a fraction of the whole dataset because the number of
    examples depends on how many the user collected
    """
    raw = num_examples * batch_size_fraction
    if not math.isfinite(raw):
        raise DegenerateBatchSize(raw)
    batch_size = math.floor(raw)
    if batch_size <= 0:
        raise DegenerateBatchSize(batch_size)
    return batch_size


def build_classifier_head(input_shape: Sequence[int], dense_units: int, num_classes: int) -> nn.Sequential:
    """
    Two dense layers on top of the flattened embedding. Keeping the head as a
    separate model leaves the feature extractor weights frozen.
    """
    in_features = int(math.prod(input_shape))
    hidden = nn.Linear(in_features, dense_units, bias=True)
    output = nn.Linear(dense_units, num_classes, bias=False)

    # Variance scaling initialisation, truncated at two standard deviations
    for layer in (hidden, output):
        std = 1 / math.sqrt(layer.in_features)
        nn.init.trunc_normal_(layer.weight, mean=0.0, std=std, a=-2 * std, b=2 * std)
    nn.init.zeros_(hidden.bias)

    return nn.Sequential(
        nn.Flatten(),
        hidden,
        nn.ReLU(),
        output,
        nn.Softmax(dim=1),
    )


def categorical_crossentropy(probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Cross-entropy between predicted class probabilities and one-hot targets"""
    probs = probs.clamp(EPSILON, 1 - EPSILON)
    return -(targets * torch.log(probs)).sum(dim=1).mean()


def fit_batches(model: nn.Module, xs: torch.Tensor, ys: torch.Tensor, batch_size: int, epochs: int,
                optimizer: optim.Optimizer, generator: Optional[torch.Generator] = None,
                show_progress: bool = True) -> Iterator[float]:
    """
    Train ``model`` on (xs, ys) one mini-batch at a time, yielding the loss of
    every batch. The loader reshuffles the rows every epoch.
    """
    loader = DataLoader(TensorDataset(xs, ys), batch_size=batch_size, shuffle=True, generator=generator)

    model.train()
    try:
        for epoch in range(epochs):
            loop = tqdm(loader, leave=False, desc=f"Epoch {epoch + 1}/{epochs}", disable=not show_progress)
            for batch_x, batch_y in loop:
                optimizer.zero_grad()
                loss = categorical_crossentropy(model(batch_x), batch_y)
                loss.backward()
                optimizer.step()

                value = loss.item()
                loop.set_postfix(loss=f"{value:.5f}")
                yield value
    finally:
        model.eval()


def fit(model: nn.Module, xs: torch.Tensor, ys: torch.Tensor, batch_size: int, epochs: int,
        optimizer: optim.Optimizer, on_batch_end: Optional[BatchEndCallback] = None,
        generator: Optional[torch.Generator] = None, show_progress: bool = True) -> List[float]:
    """
    Train ``model`` on (xs, ys). ``on_batch_end(step, {'loss': value})`` is
    called after every batch, in order. Returns the loss of every batch.
    """
    losses = []
    batches = fit_batches(model, xs, ys, batch_size, epochs, optimizer,
                          generator=generator, show_progress=show_progress)
    for step, value in enumerate(batches):
        losses.append(value)
        if on_batch_end is not None:
            on_batch_end(step, {"loss": value})
    return losses


class TrainedHead:
    """A fitted classifier head and the settings it was trained with"""

    def __init__(self, model: nn.Module, hyperparameters: Hyperparameters,
                 input_shape: Tuple[int, ...], num_classes: int, loss_history: List[float]):
        self.model = model
        self.hyperparameters = hyperparameters
        self.input_shape = tuple(input_shape)
        self.num_classes = num_classes
        self.loss_history = loss_history
        self.model.eval()

    @property
    def final_loss(self) -> Optional[float]:
        return self.loss_history[-1] if self.loss_history else None

    @torch.no_grad()
    def predict(self, embeddings: torch.Tensor) -> torch.Tensor:
        """Class probabilities, shape (N, num_classes)"""
        return self.model(embeddings)

    def classify(self, embeddings: torch.Tensor) -> Tuple[int, float]:
        """Arg-max class of a single embedding and its probability"""
        probs = self.predict(embeddings)[0]
        label = int(torch.argmax(probs).item())
        return label, float(probs[label].item())


class TrainingSession:
    """Fits a fresh classifier head on a controller dataset"""

    def __init__(self, seed: Optional[int] = None, show_progress: bool = True):
        self.seed = seed
        self.show_progress = show_progress

    def train(self, dataset: ControllerDataset, hyperparameters: Hyperparameters,
              on_batch_end: Optional[BatchEndCallback] = None) -> TrainedHead:
        run = _TrainingRun(dataset, hyperparameters, self.seed)
        batches = run.batches(self.show_progress)
        for step, value in enumerate(batches):
            run.record(step, value, on_batch_end)
        return run.finish()

    async def train_async(self, dataset: ControllerDataset, hyperparameters: Hyperparameters,
                          on_batch_end: Optional[BatchEndCallback] = None) -> TrainedHead:
        """Same as ``train`` but yields to the event loop after every batch"""
        run = _TrainingRun(dataset, hyperparameters, self.seed)
        batches = run.batches(self.show_progress)
        try:
            for step, value in enumerate(batches):
                run.record(step, value, on_batch_end)
                await asyncio.sleep(0)
        finally:
            batches.close()
        return run.finish()


class _TrainingRun:
    """State of one fit: validated settings, fresh head and a snapshot of the data"""

    def __init__(self, dataset: ControllerDataset, hyperparameters: Hyperparameters, seed: Optional[int]):
        if dataset.is_empty():
            raise EmptyDataset()

        self.hyperparameters = hyperparameters
        self.num_classes = dataset.num_classes
        num_examples = dataset.total_example_count()
        self.batch_size = compute_batch_size(num_examples, hyperparameters.batch_size_fraction)

        self.generator = None
        if seed is not None:
            torch.manual_seed(seed)
            self.generator = torch.Generator().manual_seed(seed)

        self.input_shape = tuple(dataset.example_shape)
        self.model = build_classifier_head(self.input_shape, hyperparameters.dense_units, self.num_classes)
        self.optimizer = optim.Adam(self.model.parameters(), lr=hyperparameters.learning_rate)

        # Use copies so the loader never sees later writes into the dataset cache
        self.xs, self.ys = dataset.xs.clone(), dataset.ys.clone()
        self.losses: List[float] = []

        logger.info(f"🚀 Training head on {num_examples} examples: batch size {self.batch_size}, "
                    f"{hyperparameters.epochs} epochs, {hyperparameters.dense_units} dense units")

    def batches(self, show_progress: bool) -> Iterator[float]:
        return fit_batches(self.model, self.xs, self.ys, self.batch_size, self.hyperparameters.epochs,
                           self.optimizer, generator=self.generator, show_progress=show_progress)

    def record(self, step: int, value: float, on_batch_end: Optional[BatchEndCallback]):
        self.losses.append(value)
        if on_batch_end is not None:
            on_batch_end(step, {"loss": value})

    def finish(self) -> TrainedHead:
        head = TrainedHead(self.model, self.hyperparameters, self.input_shape, self.num_classes, self.losses)
        if head.final_loss is not None:
            logger.info(f"✅ Training complete, final loss {head.final_loss:.5f}")
        return head


def save_loss_curve(losses: List[float], path: Path) -> Path:
    """Plot the per-batch loss of a training run"""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(losses, label="Training Loss")
    ax.set_title("Classifier Head Loss")
    ax.set_xlabel("Batch")
    ax.set_ylabel("Loss")
    ax.grid(True)
    ax.legend()
    fig.savefig(path, dpi=140, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Loss curve saved to {path}")
    return path
