import unittest
from dataclasses import replace
from typing import List, Tuple

import numpy as np

from yolox_kit.config import YoloxConfig
from yolox_kit.errors import ShapeMismatch, UnsupportedTransferPath
from yolox_kit.grid import expected_cell_count
from yolox_kit.readback import (
    PixelFormat,
    ReadbackRequest,
    ReadbackResponse,
    ReadbackTransfer,
    ThreadedReadbackTransfer,
    to_texture_encoding,
)
from yolox_kit.runtime import YoloxPipeline
from yolox_kit.types import NUM_BBOX_FIELDS, ColorMapEntry

COLORMAP = [
    ColorMapEntry(label="hand", color=(1.0, 0.0, 0.0)),
    ColorMapEntry(label="cup", color=(0.0, 1.0, 0.0)),
    ColorMapEntry(label="phone", color=(0.0, 0.0, 1.0)),
]
PROPOSAL_LENGTH = NUM_BBOX_FIELDS + len(COLORMAP)


def fake_model(blob: np.ndarray) -> np.ndarray:
    """
    Stand-in for a YOLOX graph: one confident "cup" in cell 5 for any input size.
    """

    height, width = blob.shape[2], blob.shape[3]
    cells = expected_cell_count((8, 16, 32), height, width)
    props = np.zeros((1, cells, PROPOSAL_LENGTH), dtype=np.float32)
    props[0, 5] = [0.5, 0.5, 0.0, 0.0, 0.9, 0.1, 0.8, 0.05]
    return props


def blob_of(width: int, height: int) -> np.ndarray:
    return np.zeros((1, 3, height, width), dtype=np.float32)


class ManualTransfer(ReadbackTransfer):
    """Transfer whose completions are fired by the test."""

    def __init__(self, fail_requests: bool = False):
        self.fail_requests = fail_requests
        self.texture = None
        self.pending: List[Tuple[ReadbackRequest, np.ndarray, object]] = []

    def blit(self, values, width, height, pixel_format):
        self.texture = to_texture_encoding(values, width).astype(pixel_format.dtype)

    def request(self, request, on_complete):
        if self.fail_requests:
            raise UnsupportedTransferPath("no async readback here")
        self.pending.append((request, self.texture.copy(), on_complete))

    def complete_all(self, has_error: bool = False) -> None:
        pending, self.pending = self.pending, []
        for request, texture, on_complete in pending:
            if has_error:
                on_complete(ReadbackResponse(request.request_id, has_error=True, error="transfer failed"))
            else:
                on_complete(ReadbackResponse(request.request_id, data=texture.tobytes()))


class TestSyncPipeline(unittest.TestCase):
    def test_detects_with_labels(self) -> None:
        with YoloxPipeline(fake_model, COLORMAP) as pipe:
            detections = pipe(blob_of(256, 256))
        self.assertEqual(len(detections), 1)
        det = detections[0]
        self.assertEqual(det.label, "cup")
        self.assertEqual(det.color, (0.0, 1.0, 0.0))
        self.assertEqual(det.bbox.class_index, 1)
        self.assertAlmostEqual(det.bbox.score, 0.72, places=5)
        self.assertAlmostEqual(det.bbox.center_x, 44.0)

    def test_requires_init(self) -> None:
        pipe = YoloxPipeline(fake_model, COLORMAP)
        with self.assertRaises(RuntimeError):
            pipe(blob_of(64, 64))

    def test_shutdown_on_exit_paths(self) -> None:
        pipe = YoloxPipeline(fake_model, COLORMAP)
        with self.assertRaises(ZeroDivisionError):
            with pipe:
                self.assertTrue(pipe.active)
                1 / 0
        self.assertFalse(pipe.active)
        with self.assertRaises(RuntimeError):
            pipe.copy_output_to_array()

    def test_grid_follows_input_resolution(self) -> None:
        with YoloxPipeline(fake_model, COLORMAP) as pipe:
            pipe(blob_of(256, 256))
            self.assertEqual(len(pipe.grid_table), 1344)
            first = pipe.grid_table

            pipe(blob_of(256, 256))
            self.assertIs(pipe.grid_table, first)

            detections = pipe(blob_of(320, 192))
            self.assertEqual(len(pipe.grid_table), expected_cell_count((8, 16, 32), 192, 320))
            self.assertEqual(len(detections), 1)

    def test_shape_mismatch_propagates(self) -> None:
        def truncated(blob: np.ndarray) -> np.ndarray:
            return fake_model(blob).reshape(-1)[:-3]

        with YoloxPipeline(truncated, COLORMAP) as pipe:
            with self.assertRaises(ShapeMismatch):
                pipe(blob_of(256, 256))

    def test_empty_frame_is_not_an_error(self) -> None:
        def empty(blob: np.ndarray) -> np.ndarray:
            return np.zeros_like(fake_model(blob))

        with YoloxPipeline(empty, COLORMAP) as pipe:
            self.assertEqual(pipe(blob_of(64, 64)), [])

    def test_crop_input_dims(self) -> None:
        pipe = YoloxPipeline(fake_model, COLORMAP)
        self.assertEqual(pipe.crop_input_dims((1280, 721)), (1280, 704))

    def test_bad_blob(self) -> None:
        with YoloxPipeline(fake_model, COLORMAP) as pipe:
            with self.assertRaises(ValueError):
                pipe(np.zeros((3, 64, 64), dtype=np.float32))


class TestAsyncPipeline(unittest.TestCase):
    def setUp(self) -> None:
        self.config = YoloxConfig(supports_async_transfer=True)

    def test_readback_arrives_one_frame_late(self) -> None:
        transfer = ManualTransfer()
        with YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer) as pipe:
            self.assertEqual(pipe(blob_of(256, 256)), [])
            self.assertEqual(pipe.channel.in_flight, 1)

            transfer.complete_all()
            detections = pipe(blob_of(256, 256))
            self.assertEqual(len(detections), 1)
            self.assertEqual(detections[0].label, "cup")
            self.assertAlmostEqual(detections[0].bbox.center_x, 44.0)

    def test_matches_sync_result(self) -> None:
        transfer = ManualTransfer()
        with YoloxPipeline(fake_model, COLORMAP) as sync_pipe:
            expected = sync_pipe(blob_of(128, 96))
        with YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer) as pipe:
            pipe(blob_of(128, 96))
            transfer.complete_all()
            self.assertEqual(pipe(blob_of(128, 96)), expected)

    def test_half_precision_texture(self) -> None:
        transfer = ManualTransfer()
        config = replace(self.config, pixel_format=PixelFormat.R16F)
        with YoloxPipeline(fake_model, COLORMAP, config, transfer=transfer) as pipe:
            pipe(blob_of(64, 64))
            transfer.complete_all()
            detections = pipe(blob_of(64, 64))
        self.assertEqual(len(detections), 1)
        self.assertAlmostEqual(detections[0].bbox.score, 0.72, places=2)

    def test_failed_readback_skips_frame_then_recovers(self) -> None:
        errors = []
        transfer = ManualTransfer()
        pipe = YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer, on_readback_error=errors.append)
        with pipe:
            pipe(blob_of(64, 64))
            transfer.complete_all(has_error=True)
            self.assertEqual(len(errors), 1)

            self.assertEqual(pipe(blob_of(64, 64)), [])
            transfer.complete_all()
            self.assertEqual(len(pipe(blob_of(64, 64))), 1)

    def test_stale_resolution_is_dropped(self) -> None:
        transfer = ManualTransfer()
        with YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer) as pipe:
            pipe(blob_of(64, 64))
            transfer.complete_all()
            # Readback from the 64x64 frame must not be decoded against the new grid.
            self.assertEqual(pipe(blob_of(128, 128)), [])
            transfer.complete_all()
            self.assertEqual(len(pipe(blob_of(128, 128))), 1)

    def test_missing_transfer_falls_back_to_sync(self) -> None:
        with YoloxPipeline(fake_model, COLORMAP, self.config) as pipe:
            self.assertFalse(pipe.supports_async_transfer)
            self.assertEqual(len(pipe(blob_of(64, 64))), 1)

    def test_unsupported_transfer_falls_back_to_sync(self) -> None:
        transfer = ManualTransfer(fail_requests=True)
        with YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer) as pipe:
            detections = pipe(blob_of(64, 64))
            self.assertEqual(len(detections), 1)
            self.assertFalse(pipe.supports_async_transfer)
            self.assertIsNone(pipe.channel)

    def test_unavailable_threaded_transfer_falls_back(self) -> None:
        transfer = ThreadedReadbackTransfer(available=False)
        with YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer) as pipe:
            self.assertEqual(len(pipe(blob_of(64, 64))), 1)

    def test_sync_path_when_flag_is_off(self) -> None:
        transfer = ManualTransfer()
        with YoloxPipeline(fake_model, COLORMAP, YoloxConfig(), transfer=transfer) as pipe:
            self.assertEqual(len(pipe(blob_of(64, 64))), 1)
        self.assertEqual(transfer.pending, [])

    def test_completion_after_shutdown_is_safe(self) -> None:
        transfer = ManualTransfer()
        pipe = YoloxPipeline(fake_model, COLORMAP, self.config, transfer=transfer)
        with pipe:
            pipe(blob_of(64, 64))
            channel = pipe.channel
        self.assertTrue(channel.closed)
        transfer.complete_all()
        self.assertIsNone(channel.take_latest())


if __name__ == "__main__":
    unittest.main()
