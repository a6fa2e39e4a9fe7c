"""
Frozen feature extractor
MobileNetV2 truncated at an internal activation, used to turn webcam frames
into embeddings for the classifier head
"""

import logging
import time
from typing import Optional, Tuple

import cv2
import numpy as np
import torch
import torch.nn as nn
from torchvision import models

logger = logging.getLogger(__name__)

# --- Configuration ---
IMG_SIZE = 224
# features[:18] stops after the last inverted residual block (320 x 7 x 7),
# before the final 1x1 expansion to 1280 channels
TRUNCATE_AT = 18
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


def preprocess_frame(frame: np.ndarray, img_size: int = IMG_SIZE) -> torch.Tensor:
    """
    Convert an RGB uint8 frame (H, W, 3) into a (1, 3, img_size, img_size)
    float tensor normalized between -1 and 1
    """
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"Expected an RGB frame of shape (H, W, 3), got {frame.shape}")

    if frame.shape[:2] != (img_size, img_size):
        frame = cv2.resize(frame, (img_size, img_size), interpolation=cv2.INTER_AREA)

    tensor = torch.from_numpy(np.ascontiguousarray(frame)).permute(2, 0, 1).unsqueeze(0)
    return tensor.float().div(127).sub(1)


def tensor_to_image(image: torch.Tensor) -> np.ndarray:
    """Undo preprocess_frame for display: (1, 3, H, W) in [-1, 1] -> RGB uint8"""
    array = image.detach().cpu()[0].permute(1, 2, 0).numpy()
    return np.clip((array + 1) * 127, 0, 255).astype(np.uint8)


class TruncatedMobileNet(nn.Module):
    """MobileNetV2 backbone returning an internal activation instead of logits"""

    def __init__(self, pretrained: bool = True, truncate_at: int = TRUNCATE_AT):
        super().__init__()
        weights = models.MobileNet_V2_Weights.DEFAULT if pretrained else None
        mobilenet = models.mobilenet_v2(weights=weights)
        self.features = mobilenet.features[:truncate_at]

        self.register_buffer("mean", torch.tensor(IMAGENET_MEAN).view(1, 3, 1, 1))
        self.register_buffer("std", torch.tensor(IMAGENET_STD).view(1, 3, 1, 1))

        # Freeze the backbone, only the classifier head gets trained
        for param in self.parameters():
            param.requires_grad_(False)
        self.eval()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # Inputs arrive in [-1, 1], the pretrained weights expect ImageNet statistics
        x = (x + 1) * 127.0 / 255.0
        x = (x - self.mean) / self.std
        return self.features(x)


class FeatureExtractor:
    """Wraps the frozen backbone with frame preprocessing and device handling"""

    def __init__(self, backbone: Optional[nn.Module] = None, pretrained: bool = True,
                 img_size: int = IMG_SIZE, device: Optional[torch.device] = None):
        self.device = device or torch.device("cuda" if torch.cuda.is_available() else "cpu")
        self.img_size = img_size
        self.backbone = backbone if backbone is not None else TruncatedMobileNet(pretrained=pretrained)
        self.backbone.to(self.device)
        self.backbone.eval()
        self._output_shape: Optional[Tuple[int, ...]] = None

        logger.info(f"Feature extractor initialized on {self.device}")

    @property
    def output_shape(self) -> Tuple[int, ...]:
        """Shape of one embedding without the batch dimension"""
        if self._output_shape is None:
            # Determine it with a dummy pass, same as building a head on top of a backbone
            dummy = torch.zeros(1, 3, self.img_size, self.img_size)
            self._output_shape = tuple(self.extract(dummy).shape[1:])
        return self._output_shape

    def preprocess(self, frame: np.ndarray) -> torch.Tensor:
        return preprocess_frame(frame, self.img_size)

    @torch.no_grad()
    def extract(self, image: torch.Tensor) -> torch.Tensor:
        """Run a preprocessed (1, 3, H, W) image through the backbone"""
        embeddings = self.backbone(image.to(self.device))
        return embeddings.cpu()

    def warm_up(self, frame: np.ndarray) -> float:
        """
        Push one frame through the backbone so the first real capture is quick.
        Returns the time it took in seconds.
        """
        start_time = time.time()
        embeddings = self.extract(self.preprocess(frame))
        self._output_shape = tuple(embeddings.shape[1:])
        elapsed = time.time() - start_time
        logger.info(f"Feature extractor warmed up in {elapsed * 1000:.1f}ms, output shape {self._output_shape}")
        return elapsed
