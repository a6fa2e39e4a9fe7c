"""
Integration Tests for the Webcam Controller
Tests capture -> train -> predict through the session, the prediction loop
and the live demo key handling
"""

import asyncio
import sys
import unittest
from dataclasses import replace
from unittest.mock import patch

import numpy as np
import torch
import torch.nn as nn

from webcam_controller.camera_manager import CameraSource, LaptopCamera
from webcam_controller.errors import (DegenerateBatchSize, EmptyDataset, InvalidHyperparameters,
                                      InvalidLabel, NoTrainedHead)
from webcam_controller.feature_extractor import FeatureExtractor
from webcam_controller.inference_loop import LoopState
from webcam_controller.live_demo import LiveControllerDemo, build_parser, main, resolve_training
from webcam_controller.session import ControllerSession
from webcam_controller.training import PRESETS, Hyperparameters, TrainingMode, TrainingSession
from webcam_controller.ui import ControllerUI

BRIGHT = 250
DARK = 5
QUICK_SETTINGS = Hyperparameters(learning_rate=0.01, batch_size_fraction=1.0, epochs=60, dense_units=10)


class FakeCamera(CameraSource):
    """Publishes a solid colour frame every few milliseconds from the event loop"""

    def __init__(self, value: int = BRIGHT, shape=(48, 64, 3), interval: float = 0.002):
        super().__init__()
        self.value = value
        self.shape = shape
        self.interval = interval
        self.paused = False
        self._feeder = None

    def start(self):
        self.is_active = True
        self._feeder = asyncio.get_running_loop().create_task(self._feed())

    def stop(self):
        self.is_active = False
        if self._feeder is not None:
            self._feeder.cancel()

    async def _feed(self):
        while self.is_active:
            if not self.paused:
                self._publish_frame(np.full(self.shape, self.value, dtype=np.uint8))
            await asyncio.sleep(self.interval)


class DeadCamera(CameraSource):
    """Opens fine but its reader fails before publishing the first frame"""

    def __init__(self):
        super().__init__()
        self.stopped = False

    def start(self):
        self.is_active = True
        asyncio.get_running_loop().call_later(0.01, self._fail)

    def stop(self):
        self.is_active = False
        self.stopped = True

    def _fail(self):
        self._report_error("Failed to read from camera")
        self.is_active = False


class RecordingUI(ControllerUI):
    """Keeps every status message"""

    def __init__(self):
        super().__init__()
        self.statuses = []
        self.predictions = []

    def train_status(self, status: str):
        super().train_status(status)
        self.statuses.append(status)

    def predict_class(self, label: int, confidence: float):
        super().predict_class(label, confidence)
        self.predictions.append((label, confidence))


def make_extractor() -> FeatureExtractor:
    # Average pooling keeps the frame colour, enough to tell gestures apart
    return FeatureExtractor(backbone=nn.AvgPool2d(16), img_size=32, device=torch.device("cpu"))


async def wait_for_iterations(loop, count: int, timeout: float = 5.0):
    async def _wait():
        while loop.iterations < count:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_wait(), timeout)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        torch.manual_seed(0)
        self.camera = FakeCamera()
        self.ui = RecordingUI()
        self.session = ControllerSession(self.camera, make_extractor(), ui=self.ui,
                                         trainer=TrainingSession(seed=0, show_progress=False))
        self.addAsyncCleanup(self.session.close)
        self.assertTrue(await self.session.init())

    async def collect(self, label: int, value: int, count: int = 5):
        self.camera.value = value
        for _ in range(count):
            self.assertTrue(await self.session.add_example(label))

    async def train_bright_vs_dark(self):
        await self.collect(0, BRIGHT)
        await self.collect(1, DARK)
        return await self.session.train(QUICK_SETTINGS)


class TestCaptureTrainPredict(SessionTestCase):
    """Test the whole controller workflow"""

    async def test_capture_train_predict_flow(self):
        """Test examples, training status stream and live predictions"""
        await self.collect(0, BRIGHT)
        await self.collect(1, DARK)

        self.assertEqual(self.ui.totals, [5, 5, 0, 0])
        self.assertEqual(set(self.ui.thumbnails), {0, 1})
        self.assertEqual(self.session.example_counts(), {0: 5, 1: 5, 2: 0, 3: 0})

        head = await self.session.train(QUICK_SETTINGS)

        self.assertIs(self.session.head, head)
        self.assertEqual(self.ui.statuses[0], "Training...")
        loss_statuses = [s for s in self.ui.statuses if s.startswith("Loss: ")]
        self.assertEqual(len(loss_statuses), QUICK_SETTINGS.epochs)
        self.assertTrue(self.ui.status.startswith("Done! Loss:"))
        self.assertFalse(self.session.training)

        self.camera.value = BRIGHT
        task = self.session.start_predicting()
        self.assertIsNotNone(task)
        self.assertTrue(self.ui.predicting)
        await wait_for_iterations(self.session.loop, 3)

        label, confidence = self.ui.last_prediction
        self.assertEqual(label, 0)
        self.assertGreater(confidence, 0.5)
        self.assertTrue(self.ui.confidence_text().startswith("Gesture: up"))

        self.camera.value = DARK
        seen = self.session.loop.iterations
        await wait_for_iterations(self.session.loop, seen + 3)
        self.assertEqual(self.ui.last_prediction[0], 1)

        self.session.stop_predicting()
        await asyncio.wait_for(self.session.loop.wait_stopped(), 1.0)
        self.assertTrue(task.done())
        self.assertFalse(self.ui.predicting)

    async def test_status_visible_while_training(self):
        """Test other tasks see the training status and the per-batch loss"""
        await self.collect(0, BRIGHT)
        await self.collect(1, DARK)
        seen = []

        async def redraw():
            while True:
                seen.append(self.ui.status)
                await asyncio.sleep(0)

        observer = asyncio.get_running_loop().create_task(redraw())
        try:
            await self.session.train(QUICK_SETTINGS)
        finally:
            observer.cancel()
            await asyncio.wait([observer])

        self.assertIn("Training...", seen)
        self.assertGreater(len([status for status in seen if status.startswith("Loss: ")]), 0)

    async def test_redo_example(self):
        """Test redo drops the examples, the count and the thumbnail of a label"""
        await self.collect(0, BRIGHT, count=3)
        await self.collect(2, DARK, count=2)

        self.session.redo_example(0)

        self.assertEqual(self.session.dataset.count_for_label(0), 0)
        self.assertEqual(self.ui.totals[0], 0)
        self.assertNotIn(0, self.ui.thumbnails)
        self.assertEqual(self.session.dataset.total_example_count(), 2)
        self.assertEqual(self.session.dataset.ys.argmax(dim=1).tolist(), [2, 2])

    async def test_invalid_label_rejected(self):
        with self.assertRaises(InvalidLabel):
            await self.session.add_example(4)
        self.assertTrue(self.session.dataset.is_empty())

    async def test_training_errors_reach_status(self):
        """Test training errors are shown as status text and raised"""
        with self.assertRaises(EmptyDataset):
            await self.session.train()
        self.assertEqual(self.ui.status, "Add some examples before training!")
        self.assertFalse(self.session.training)
        self.assertIsNone(self.session.head)

        await self.collect(0, BRIGHT, count=2)
        with self.assertRaises(DegenerateBatchSize):
            await self.session.train(replace(QUICK_SETTINGS, batch_size_fraction=0.1))
        self.assertTrue(self.ui.status.startswith("Batch size is 0"))
        self.assertIsNone(self.session.head)

    async def test_training_uses_session_mode(self):
        await self.collect(0, BRIGHT, count=5)
        self.session.training_mode = TrainingMode.FAST

        head = await self.session.train()

        self.assertEqual(head.hyperparameters, PRESETS[TrainingMode.FAST])
        # 5 examples, batch size 2
        self.assertEqual(len(head.loss_history), 3 * PRESETS[TrainingMode.FAST].epochs)


class TestPredictionLoop(SessionTestCase):
    """Test the prediction loop state machine"""

    async def test_arm_without_head(self):
        """Test predicting before training raises and stays idle"""
        with self.assertRaises(NoTrainedHead):
            self.session.start_predicting()

        self.assertIs(self.session.loop.state, LoopState.IDLE)
        self.assertFalse(self.ui.predicting)
        self.assertEqual(self.ui.status, "Train a model before predicting!")

    async def test_disarm_stops_within_one_iteration(self):
        await self.train_bright_vs_dark()
        self.session.start_predicting()
        await wait_for_iterations(self.session.loop, 2)

        iterations = self.session.loop.iterations
        self.session.stop_predicting()
        await asyncio.wait_for(self.session.loop.wait_stopped(), 1.0)

        self.assertLessEqual(self.session.loop.iterations, iterations + 1)
        self.assertIs(self.session.loop.state, LoopState.IDLE)

    async def test_disarm_while_waiting_for_frame(self):
        """Test a loop blocked on the camera exits without another prediction"""
        await self.train_bright_vs_dark()
        task = self.session.start_predicting()
        await wait_for_iterations(self.session.loop, 1)

        self.camera.paused = True
        await asyncio.sleep(0.05)
        iterations = self.session.loop.iterations

        self.session.stop_predicting()
        await asyncio.sleep(0.02)
        self.assertFalse(task.done())

        self.camera.paused = False
        await asyncio.wait_for(self.session.loop.wait_stopped(), 1.0)
        self.assertEqual(self.session.loop.iterations, iterations)

    async def test_rearm_reuses_running_task(self):
        """Test at most one loop task exists"""
        await self.train_bright_vs_dark()
        first = self.session.start_predicting()
        await wait_for_iterations(self.session.loop, 1)

        self.session.stop_predicting()
        second = self.session.start_predicting()

        self.assertIs(first, second)
        self.assertFalse(first.done())
        self.assertIs(self.session.start_predicting(), first)

        iterations = self.session.loop.iterations
        await wait_for_iterations(self.session.loop, iterations + 2)
        self.session.stop_predicting()
        await self.session.loop.wait_stopped()

    async def test_training_stops_prediction(self):
        """Test a new training run stops the loop and swaps the head"""
        old_head = await self.train_bright_vs_dark()
        task = self.session.start_predicting()
        await wait_for_iterations(self.session.loop, 1)

        new_head = await self.session.train(QUICK_SETTINGS)

        self.assertTrue(task.done())
        self.assertFalse(self.session.is_predicting)
        self.assertIsNot(new_head, old_head)
        self.assertIs(self.session.head, new_head)

    async def test_refuses_to_predict_while_training(self):
        await self.train_bright_vs_dark()
        self.session.training = True
        self.assertIsNone(self.session.start_predicting())
        self.assertIs(self.session.loop.state, LoopState.IDLE)

    async def test_lost_head_stops_loop(self):
        """Test a loop error is recorded and the UI leaves predicting mode"""
        await self.train_bright_vs_dark()
        task = self.session.start_predicting()
        await wait_for_iterations(self.session.loop, 1)

        self.session.head = None
        await asyncio.wait_for(self.session.loop.wait_stopped(), 1.0)

        self.assertTrue(task.done())
        self.assertIsInstance(self.session.loop.last_error, NoTrainedHead)
        self.assertIs(self.session.loop.state, LoopState.IDLE)
        self.assertFalse(self.ui.predicting)


class TestNoWebcam(unittest.IsolatedAsyncioTestCase):
    """Test the session without a camera"""

    @patch('webcam_controller.camera_manager.cv2.VideoCapture')
    async def test_capture_disabled_without_webcam(self, mock_capture):
        mock_capture.return_value.isOpened.return_value = False
        ui = RecordingUI()
        session = ControllerSession(LaptopCamera(camera_id=0), make_extractor(), ui=ui)

        self.assertFalse(await session.init())

        self.assertFalse(session.capture_enabled)
        self.assertEqual(ui.webcam_error, "Cannot open camera 0")
        self.assertFalse(await session.add_example(0))
        self.assertEqual(ui.totals, [0, 0, 0, 0])
        self.assertTrue(session.dataset.is_empty())
        with self.assertRaises(InvalidLabel):
            await session.add_example(-1)
        self.assertIsNone(session.start_predicting())

        await session.close()

    async def test_camera_failing_before_first_frame(self):
        """Test a camera that opens but never delivers a frame disables capture"""
        camera = DeadCamera()
        ui = RecordingUI()
        session = ControllerSession(camera, make_extractor(), ui=ui)

        self.assertFalse(await session.init())

        self.assertFalse(session.capture_enabled)
        self.assertTrue(camera.stopped)
        self.assertEqual(ui.webcam_error, "Failed to read from camera")
        self.assertFalse(await session.add_example(1))
        self.assertIsNone(session.start_predicting())

        await session.close()

    @patch('webcam_controller.live_demo.cv2.destroyAllWindows')
    @patch('webcam_controller.live_demo.cv2.waitKey', return_value=ord('q'))
    @patch('webcam_controller.live_demo.cv2.imshow')
    async def test_demo_without_frames_cleans_up(self, mock_imshow, mock_wait_key, mock_destroy):
        """Test the demo keeps its window loop and cleanup when the webcam dies at start"""
        camera = DeadCamera()
        session = ControllerSession(camera, make_extractor(), ui=RecordingUI())
        demo = LiveControllerDemo(session)

        self.assertFalse(await demo.run())

        mock_imshow.assert_called_once()
        mock_destroy.assert_called_once()
        self.assertTrue(camera.stopped)
        self.assertFalse(demo.is_running)


class TestLiveDemo(SessionTestCase):
    """Test key handling and drawing of the live demo"""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.demo = LiveControllerDemo(self.session, display_scale=0.5)

    async def test_example_keys(self):
        self.assertTrue(await self.demo.handle_key(ord('w')))
        self.assertTrue(await self.demo.handle_key(ord('d')))
        self.assertTrue(await self.demo.handle_key(ord('d')))
        self.assertEqual(self.ui.totals, [1, 0, 0, 2])

        self.assertTrue(await self.demo.handle_key(ord('D')))
        self.assertEqual(self.ui.totals, [1, 0, 0, 0])

    async def test_train_and_predict_keys(self):
        # Nothing collected yet, training is skipped
        await self.demo.handle_key(ord('t'))
        await self.demo.training_task
        self.assertIsNone(self.session.head)
        await self.demo.handle_key(ord('p'))
        self.assertFalse(self.session.is_predicting)

        await self.collect(0, BRIGHT, count=5)
        self.session.training_mode = TrainingMode.CUSTOM
        self.session.custom_settings = QUICK_SETTINGS
        await self.demo.handle_key(ord('t'))
        await self.demo.training_task
        self.assertIsNotNone(self.session.head)

        await self.demo.handle_key(ord('p'))
        self.assertTrue(self.session.is_predicting)
        await self.demo.handle_key(ord('p'))
        self.assertFalse(self.session.is_predicting)
        await self.session.loop.wait_stopped()

    async def test_training_runs_in_background(self):
        """Test the window loop keeps running while the head trains"""
        await self.collect(0, BRIGHT, count=3)
        await self.collect(1, DARK, count=3)
        self.session.training_mode = TrainingMode.CUSTOM
        self.session.custom_settings = QUICK_SETTINGS

        await self.demo.handle_key(ord('t'))
        task = self.demo.training_task
        self.assertIs(self.demo.start_training(), task)

        statuses = []
        while not task.done():
            statuses.append(self.ui.status)
            await asyncio.sleep(0)

        self.assertTrue(any(status.startswith("Loss: ") for status in statuses))
        self.assertIsNotNone(self.session.head)

    async def test_mode_and_quit_keys(self):
        self.assertIs(self.session.training_mode, TrainingMode.BALANCED)
        await self.demo.handle_key(ord('m'))
        self.assertIs(self.session.training_mode, TrainingMode.ACCURATE)
        await self.demo.handle_key(ord('m'))
        self.assertIs(self.session.training_mode, TrainingMode.FAST)

        self.assertTrue(await self.demo.handle_key(255))
        self.assertFalse(await self.demo.handle_key(ord('q')))
        self.assertFalse(await self.demo.handle_key(27))

    async def test_draw_overlay(self):
        await self.collect(1, DARK, count=1)
        frame = self.camera.get_frame()

        display = self.demo.draw_overlay(frame)
        self.assertEqual(display.shape, (24, 32, 3))

        blank = self.demo.draw_overlay(None)
        self.assertEqual(blank.shape, (240, 320, 3))
        self.assertEqual(blank.dtype, np.uint8)


class TestCommandLine(unittest.TestCase):
    """Test argument parsing"""

    def test_defaults(self):
        args = build_parser().parse_args([])
        self.assertEqual(args.camera, 0)
        self.assertEqual(resolve_training(args), (TrainingMode.BALANCED, None))
        self.assertFalse(args.no_keys)

    def test_preset_mode(self):
        args = build_parser().parse_args(['--mode', 'fast', '--camera', '2'])
        self.assertEqual(resolve_training(args), (TrainingMode.FAST, None))
        self.assertEqual(args.camera, 2)

    def test_custom_overrides(self):
        args = build_parser().parse_args(['--mode', 'accurate', '--epochs', '5', '--learning-rate', '0.01'])
        mode, custom = resolve_training(args)
        self.assertIs(mode, TrainingMode.CUSTOM)
        self.assertEqual(custom, replace(PRESETS[TrainingMode.ACCURATE], epochs=5, learning_rate=0.01))

    def test_custom_mode_without_overrides(self):
        args = build_parser().parse_args(['--mode', 'custom'])
        self.assertEqual(resolve_training(args), (TrainingMode.CUSTOM, PRESETS[TrainingMode.BALANCED]))

    def test_invalid_custom_values(self):
        args = build_parser().parse_args(['--dense-units', '0'])
        with self.assertRaises(InvalidHyperparameters):
            resolve_training(args)
        with self.assertRaises(SystemExit):
            main(['--dense-units', '0'])


def run_integration_tests():
    """Run all integration tests"""
    print("🔗 Running Integration Tests for the Webcam Controller")
    print("=" * 70)

    test_suite = unittest.TestSuite()
    test_classes = [
        TestCaptureTrainPredict,
        TestPredictionLoop,
        TestNoWebcam,
        TestLiveDemo,
        TestCommandLine,
    ]
    for test_class in test_classes:
        test_suite.addTests(unittest.TestLoader().loadTestsFromTestCase(test_class))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(test_suite)

    print("\n" + "=" * 70)
    print("📊 INTEGRATION TEST SUMMARY")
    print("=" * 70)
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")

    if result.wasSuccessful():
        print("\n✅ ALL INTEGRATION TESTS PASSED!")
    return result


if __name__ == "__main__":
    sys.exit(0 if run_integration_tests().wasSuccessful() else 1)
