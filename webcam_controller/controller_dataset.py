"""
Controller dataset for webcam controls
Collects feature tensors per label and keeps them concatenated into
training-ready xs / ys tensors
"""

import logging
import numbers
from typing import List, Optional, Tuple

import torch
import torch.nn.functional as F

from .errors import InvalidLabel, ShapeMismatch

logger = logging.getLogger(__name__)

# --- Configuration ---
INITIAL_CAPACITY = 16  # rows allocated the first time the cache has to grow


class ControllerDataset:
    """
    A dataset for webcam controls which allows the user to add example tensors
    for particular labels. Every example is a tensor with a leading batch
    dimension of 1, e.g. the activation of the feature extractor for one frame.

    The dataset owns the examples handed to it and exposes two derived tensors:
    ``xs`` holds one row per example and ``ys`` the matching one-hot labels.
    Appends write into a backing store that doubles in size when it is full,
    so collecting examples while a button is held stays cheap. ``xs`` / ``ys``
    are views over the filled part of that store.
    """

    def __init__(self, num_classes: int, initial_capacity: int = INITIAL_CAPACITY):
        if num_classes < 1:
            raise ValueError(f"num_classes must be positive, got {num_classes}")
        self.num_classes = num_classes
        self.initial_capacity = max(2, initial_capacity)
        self.examples_by_label: List[List[torch.Tensor]] = [[] for _ in range(num_classes)]

        self._x_store: Optional[torch.Tensor] = None
        self._y_store: Optional[torch.Tensor] = None
        self._rows = 0

    # ------------------------------------------------------------------
    # Derived tensors
    # ------------------------------------------------------------------
    @property
    def xs(self) -> Optional[torch.Tensor]:
        if self._x_store is None:
            return None
        return self._x_store[:self._rows]

    @property
    def ys(self) -> Optional[torch.Tensor]:
        if self._y_store is None:
            return None
        return self._y_store[:self._rows]

    @property
    def example_shape(self) -> Optional[torch.Size]:
        """Shape of a single example without its batch dimension"""
        if self._x_store is None:
            return None
        return self._x_store.shape[1:]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def total_example_count(self) -> int:
        return sum(len(examples) for examples in self.examples_by_label)

    def count_for_label(self, label: int) -> int:
        self.check_label(label)
        return len(self.examples_by_label[label])

    def counts(self) -> List[int]:
        return [len(examples) for examples in self.examples_by_label]

    def is_empty(self) -> bool:
        return self._x_store is None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def add_example(self, example: torch.Tensor, label: int):
        """
        Adds an example to the controller dataset.

        Args:
            example: Tensor of shape (1, ...). It can be an image, an
                activation, or any other tensor. The dataset keeps it, so the
                caller must not modify it afterwards.
            label: Class index of the example.
        """
        self.check_label(label)
        example = example.detach()
        self._check_shape(example)

        # One-hot encode the label
        y = self._one_hot([label], example.device)

        if self._x_store is None:
            # The first example becomes the cache directly
            self._x_store, self._y_store = example, y
            self._rows = 1
        else:
            if self._rows == self._x_store.shape[0]:
                self._grow()
            self._x_store[self._rows] = example[0]
            self._y_store[self._rows] = y[0]
            self._rows += 1

        self.examples_by_label[label].append(example)
        logger.debug(f"Added example for label {label} ({self._rows} rows cached)")

    def rebuild_cache(self):
        """Recompute xs / ys from every stored example, label by label"""
        self._x_store, self._y_store, self._rows = self._build_cache(self.examples_by_label)

    def clear_label(self, label: int):
        """Drop every example of a label and rebuild xs / ys from the rest"""
        self.check_label(label)
        remaining = [examples if i != label else [] for i, examples in enumerate(self.examples_by_label)]

        x_store, y_store, rows = self._build_cache(remaining)

        dropped = len(self.examples_by_label[label])
        self.examples_by_label = remaining
        self._x_store, self._y_store, self._rows = x_store, y_store, rows
        logger.info(f"Cleared {dropped} examples for label {label}")

    def reset(self):
        """Drop all examples and cached tensors"""
        self.examples_by_label = [[] for _ in range(self.num_classes)]
        self._x_store, self._y_store, self._rows = None, None, 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def check_label(self, label: int):
        if isinstance(label, bool) or not isinstance(label, numbers.Integral) or not 0 <= label < self.num_classes:
            raise InvalidLabel(label, self.num_classes)

    def _check_shape(self, example: torch.Tensor):
        if example.dim() == 0 or example.shape[0] != 1:
            raise ShapeMismatch(f"Expected an example with a leading batch dimension of 1, got {tuple(example.shape)}")
        expected = self.example_shape
        if expected is not None and example.shape[1:] != expected:
            raise ShapeMismatch(f"Example shape {tuple(example.shape[1:])} does not match {tuple(expected)}")
        if self._x_store is not None and example.dtype != self._x_store.dtype:
            raise ShapeMismatch(f"Example dtype {example.dtype} does not match {self._x_store.dtype}")

    def _one_hot(self, labels: List[int], device) -> torch.Tensor:
        indices = torch.tensor(labels, dtype=torch.long, device=device)
        return F.one_hot(indices, self.num_classes).float()

    def _grow(self):
        capacity = max(self._x_store.shape[0] * 2, self.initial_capacity)
        x_store = self._x_store.new_empty((capacity, *self._x_store.shape[1:]))
        y_store = self._y_store.new_empty((capacity, self.num_classes))
        x_store[:self._rows] = self._x_store[:self._rows]
        y_store[:self._rows] = self._y_store[:self._rows]
        self._x_store, self._y_store = x_store, y_store

    def _build_cache(self, examples_by_label) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor], int]:
        xs_list, labels = [], []
        for label, examples in enumerate(examples_by_label):
            xs_list.extend(examples)
            labels.extend([label] * len(examples))

        if not xs_list:
            return None, None, 0

        xs = torch.cat(xs_list, dim=0)
        ys = self._one_hot(labels, xs.device)
        return xs, ys, len(labels)
