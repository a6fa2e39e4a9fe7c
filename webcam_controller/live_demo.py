"""
Live Webcam Controller Demo
Collect examples for each arrow key from the webcam, train the classifier head
and play with gestures, all from one OpenCV window
"""

import argparse
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .camera_manager import CAMERA_HEIGHT, CAMERA_WIDTH, FPS_TARGET, LaptopCamera
from .errors import DegenerateBatchSize, EmptyDataset, InvalidHyperparameters, NoTrainedHead
from .feature_extractor import FeatureExtractor
from .session import ControllerSession
from .training import PRESETS, Hyperparameters, TrainingMode, TrainingSession, save_loss_curve
from .ui import CONTROLS, ControllerUI, KeyboardGameUI

logger = logging.getLogger(__name__)

# --- Configuration ---
WINDOW_NAME = "Webcam Controller - Live Demo"
THUMB_SIZE = 80
# lower case adds an example, upper case redoes the label
ADD_KEYS = {'w': 0, 's': 1, 'a': 2, 'd': 3}
REDO_KEYS = {key.upper(): label for key, label in ADD_KEYS.items()}
MODE_CYCLE = [TrainingMode.FAST, TrainingMode.BALANCED, TrainingMode.ACCURATE]


class LiveControllerDemo:
    """OpenCV front end for a controller session"""

    def __init__(self, session: ControllerSession, display_scale: float = 1.0,
                 loss_plot: Optional[Path] = None):
        self.session = session
        self.display_scale = display_scale
        self.loss_plot = Path(loss_plot) if loss_plot else None
        self.is_running = False
        self.frame_interval = 1.0 / FPS_TARGET
        self.training_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Key handling
    # ------------------------------------------------------------------
    async def handle_key(self, key: int) -> bool:
        """Apply one key press, returns False when the demo should quit"""
        if key == 255 or key < 0:
            return True

        char = chr(key)
        if char == 'q' or key == 27:  # ESC key
            logger.info("Demo stopped by user")
            return False

        if char in ADD_KEYS:
            await self.session.add_example(ADD_KEYS[char])
        elif char in REDO_KEYS:
            self.session.redo_example(REDO_KEYS[char])
            logger.info(f"Cleared examples for '{CONTROLS[REDO_KEYS[char]]}'")
        elif char == 't':
            self.start_training()
        elif char == 'p':
            self.toggle_predicting()
        elif char == 'm':
            self.cycle_mode()
        return True

    def start_training(self) -> asyncio.Task:
        """Train in the background so the window keeps redrawing the loss"""
        if self.training_task is not None and not self.training_task.done():
            logger.info("Training already in progress")
            return self.training_task
        self.training_task = asyncio.get_running_loop().create_task(self.train())
        return self.training_task

    async def train(self):
        try:
            head = await self.session.train()
        except (EmptyDataset, DegenerateBatchSize) as e:
            logger.warning(f"Training skipped: {e}")
            return

        if self.loss_plot is not None:
            save_loss_curve(head.loss_history, self.loss_plot)

    def toggle_predicting(self):
        if self.session.is_predicting:
            self.session.stop_predicting()
            return
        try:
            self.session.start_predicting()
        except NoTrainedHead as e:
            logger.warning(str(e))

    def cycle_mode(self) -> TrainingMode:
        modes = list(MODE_CYCLE)
        if self.session.custom_settings is not None:
            modes.append(TrainingMode.CUSTOM)

        current = self.session.training_mode
        index = modes.index(current) if current in modes else -1
        self.session.training_mode = modes[(index + 1) % len(modes)]
        logger.info(f"Training mode: {self.session.training_mode.value}")
        return self.session.training_mode

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------
    def draw_overlay(self, frame: Optional[np.ndarray]) -> np.ndarray:
        """Convert an RGB frame for display and draw the controller state on it"""
        if frame is None:
            display = np.zeros((CAMERA_HEIGHT, CAMERA_WIDTH, 3), dtype=np.uint8)
        else:
            display = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)

        display = self._draw_info_overlay(display)
        display = self._draw_thumbnails(display)

        if self.display_scale != 1.0:
            new_width = int(display.shape[1] * self.display_scale)
            new_height = int(display.shape[0] * self.display_scale)
            display = cv2.resize(display, (new_width, new_height))
        return display

    def _info_lines(self) -> List[Tuple[str, Tuple[int, int, int]]]:
        ui = self.session.ui
        lines = []

        if ui.webcam_error:
            lines.append((f"No webcam: {ui.webcam_error}", (0, 0, 255)))

        totals = " | ".join(f"{name}: {count}" for name, count in zip(ui.controls, ui.totals))
        lines.append((totals, (255, 255, 255)))

        mode = self.session.training_mode.value
        state = "PREDICTING" if ui.predicting else "idle"
        lines.append((f"Mode: {mode} | {state} | {ui.status}", (0, 255, 255)))

        gesture = ui.confidence_text()
        if gesture and ui.predicting:
            lines.append((gesture, (0, 255, 0)))
        return lines

    def _draw_info_overlay(self, frame: np.ndarray) -> np.ndarray:
        """Draw status, example totals and the current gesture"""
        h, w = frame.shape[:2]
        overlay = frame.copy()
        lines = self._info_lines()

        panel_height = 20 + 25 * len(lines)
        cv2.rectangle(overlay, (0, 0), (w, panel_height), (0, 0, 0), -1)

        for i, (text, color) in enumerate(lines):
            cv2.putText(overlay, text, (10, 25 + i * 25),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 1)

        # Blend overlay
        alpha = 0.8
        return cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0)

    def _draw_thumbnails(self, frame: np.ndarray) -> np.ndarray:
        """Latest example of every label along the bottom edge"""
        h, w = frame.shape[:2]
        thumbnails = self.session.ui.thumbnails
        controls = self.session.ui.controls

        for label, name in enumerate(controls):
            x = 10 + label * (THUMB_SIZE + 10)
            y = h - THUMB_SIZE - 10
            if x + THUMB_SIZE > w or y < 0:
                break

            thumb = thumbnails.get(label)
            if thumb is not None:
                thumb = cv2.resize(thumb, (THUMB_SIZE, THUMB_SIZE))
                frame[y:y + THUMB_SIZE, x:x + THUMB_SIZE] = cv2.cvtColor(thumb, cv2.COLOR_RGB2BGR)
            cv2.rectangle(frame, (x, y), (x + THUMB_SIZE, y + THUMB_SIZE), (255, 255, 255), 1)
            cv2.putText(frame, name, (x + 4, y - 6), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
        return frame

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def run(self) -> bool:
        """
        Run the live demo until the user quits. Returns False when the webcam
        could not be started and the demo ran with capture disabled.
        """
        self.is_running = True
        webcam_started = False
        try:
            webcam_started = await self.session.init()

            logger.info("🎬 Starting webcam controller demo...")
            logger.info("w/s/a/d add up/down/left/right, W/S/A/D redo, "
                        "t train, p predict, m training mode, q quit")

            while self.is_running:
                display = self.draw_overlay(self.session.camera.get_frame())
                cv2.imshow(WINDOW_NAME, display)

                key = cv2.waitKey(1) & 0xFF
                if not await self.handle_key(key):
                    break

                # Let the capture and prediction tasks run
                await asyncio.sleep(self.frame_interval)
        except KeyboardInterrupt:
            logger.info("Demo interrupted by user")
        finally:
            await self.cleanup()
        return webcam_started

    async def cleanup(self):
        self.is_running = False
        if self.training_task is not None and not self.training_task.done():
            self.training_task.cancel()
            await asyncio.wait([self.training_task])
        await self.session.close()
        cv2.destroyAllWindows()
        logger.info("Demo completed!")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Control arrow keys with webcam gestures')
    parser.add_argument('--camera', type=int, default=0, help='Camera ID (default: 0)')
    parser.add_argument('--mode', choices=[mode.value for mode in TrainingMode],
                        default=TrainingMode.BALANCED.value, help='Training mode')
    parser.add_argument('--learning-rate', type=float, help='Custom learning rate')
    parser.add_argument('--batch-size-fraction', type=float,
                        help='Custom batch size as a fraction of the examples')
    parser.add_argument('--epochs', type=int, help='Custom number of epochs')
    parser.add_argument('--dense-units', type=int, help='Custom hidden layer size')
    parser.add_argument('--no-pretrained', action='store_true',
                        help='Use a randomly initialised backbone (no weight download)')
    parser.add_argument('--no-keys', action='store_true', help='Show predictions without pressing keys')
    parser.add_argument('--loss-plot', type=Path, help='Save the loss curve of every training run here')
    parser.add_argument('--scale', type=float, default=1.0, help='Display scale factor')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def resolve_training(args: argparse.Namespace) -> Tuple[TrainingMode, Optional[Hyperparameters]]:
    """
    Training mode and custom settings from the command line. Any explicit
    hyperparameter flag switches to the custom mode, starting from the
    selected preset.
    """
    mode = TrainingMode(args.mode)
    overrides = {
        'learning_rate': args.learning_rate,
        'batch_size_fraction': args.batch_size_fraction,
        'epochs': args.epochs,
        'dense_units': args.dense_units,
    }
    overrides = {name: value for name, value in overrides.items() if value is not None}

    if not overrides and mode is not TrainingMode.CUSTOM:
        return mode, None

    base = PRESETS.get(mode, PRESETS[TrainingMode.BALANCED])
    return TrainingMode.CUSTOM, replace(base, **overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function for command line usage"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        mode, custom = resolve_training(args)
    except InvalidHyperparameters as e:
        parser.error(str(e))

    ui = ControllerUI() if args.no_keys else KeyboardGameUI()
    session = ControllerSession(
        LaptopCamera(args.camera),
        FeatureExtractor(pretrained=not args.no_pretrained),
        ui=ui,
        trainer=TrainingSession(),
        training_mode=mode,
        custom_settings=custom,
    )
    demo = LiveControllerDemo(session, display_scale=args.scale, loss_plot=args.loss_plot)

    success = asyncio.run(demo.run())
    if not success:
        logger.error("Demo ran without a webcam")
        return 1
    return 0


if __name__ == "__main__":
    exit(main())
