"""
Camera sources for the webcam controller
OpenCV capture runs on a background thread and publishes the latest frame;
consumers await fresh frames cooperatively from the event loop
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import cv2
import numpy as np

from .errors import NoDeviceAvailable

logger = logging.getLogger(__name__)

# --- Configuration ---
CAMERA_WIDTH = 640
CAMERA_HEIGHT = 480
FPS_TARGET = 30.0
POLL_INTERVAL = 0.005  # seconds between checks for a new frame


class CameraSource(ABC):
    """Abstract base class for camera sources"""

    def __init__(self):
        self.is_active = False
        self.frame_callback = None
        self.error_callback = None
        self.last_error: Optional[str] = None

        self.latest_frame: Optional[np.ndarray] = None
        self.frame_lock = threading.Lock()
        self._frame_id = 0
        self._consumed_frame_id = 0

    @abstractmethod
    def start(self):
        """Start the camera source, raises NoDeviceAvailable on failure"""
        pass

    @abstractmethod
    def stop(self):
        """Stop the camera source"""
        pass

    def get_frame(self) -> Optional[np.ndarray]:
        """Get the latest frame without waiting"""
        with self.frame_lock:
            return self.latest_frame.copy() if self.latest_frame is not None else None

    async def capture(self) -> np.ndarray:
        """Wait for a frame that has not been returned before"""
        while True:
            with self.frame_lock:
                frame_id, frame = self._frame_id, self.latest_frame

            if frame is not None and frame_id != self._consumed_frame_id:
                self._consumed_frame_id = frame_id
                return frame.copy()

            if not self.is_active:
                raise NoDeviceAvailable(self.last_error or "Camera is not running")

            await asyncio.sleep(POLL_INTERVAL)

    def set_frame_callback(self, callback: Callable[[np.ndarray], None]):
        """Set callback for new frames"""
        self.frame_callback = callback

    def set_error_callback(self, callback: Callable[[str], None]):
        """Set callback for errors"""
        self.error_callback = callback

    def _publish_frame(self, frame: np.ndarray):
        with self.frame_lock:
            self.latest_frame = frame
            self._frame_id += 1

        if self.frame_callback:
            self.frame_callback(frame)

    def _report_error(self, message: str):
        self.last_error = message
        logger.error(message)
        if self.error_callback:
            self.error_callback(message)


class LaptopCamera(CameraSource):
    """Laptop / USB webcam source using OpenCV"""

    def __init__(self, camera_id: int = 0, width: int = CAMERA_WIDTH, height: int = CAMERA_HEIGHT,
                 fps_target: float = FPS_TARGET, mirror: bool = True):
        super().__init__()
        self.camera_id = camera_id
        self.width = width
        self.height = height
        self.fps_target = fps_target
        self.mirror = mirror
        self.cap = None
        self.capture_thread = None

    def start(self):
        """Open the webcam and start the capture thread"""
        if self.is_active:
            return

        self.cap = cv2.VideoCapture(self.camera_id)
        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            message = f"Cannot open camera {self.camera_id}"
            self._report_error(message)
            raise NoDeviceAvailable(message)

        # Set camera properties
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps_target)

        self.last_error = None
        self.is_active = True
        self.capture_thread = threading.Thread(target=self._capture_loop, daemon=True)
        self.capture_thread.start()

        logger.info(f"Laptop camera {self.camera_id} started")

    def stop(self):
        """Stop laptop camera capture"""
        self.is_active = False

        if self.capture_thread and self.capture_thread.is_alive():
            self.capture_thread.join(timeout=2)
        self.capture_thread = None

        if self.cap:
            self.cap.release()
            self.cap = None

        logger.info("Laptop camera stopped")

    def _capture_loop(self):
        """Capture frames in background thread"""
        frame_interval = 1.0 / self.fps_target

        while self.is_active:
            start_time = time.time()

            ret, frame = self.cap.read()
            if not ret:
                self._report_error("Failed to read from camera")
                self.is_active = False
                break

            if self.mirror:
                frame = cv2.flip(frame, 1)
            # Convert BGR to RGB for consistency
            self._publish_frame(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

            # Maintain target FPS
            elapsed = time.time() - start_time
            time.sleep(max(0, frame_interval - elapsed))


def scan_cameras(max_index: int = 4) -> Dict[str, int]:
    """Probe the first camera indices and return the ones that open"""
    available = {}
    for i in range(max_index):
        cap = cv2.VideoCapture(i)
        if cap.isOpened():
            available[f"Laptop Camera {i}"] = i
        cap.release()
    return available
