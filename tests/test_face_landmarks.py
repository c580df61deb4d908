"""Tests for landmark geometry, alignment and the ONNX landmark stage."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from facepipe.ml.face_landmarks import FaceLandmarks, OnnxFaceLandmarker
from facepipe.ml.geometry import Point, Rect
from facepipe.ml.tensor_engine import NumpyTensorEngine

# Eyes, nose tip, mouth corners in a 100x100 crop.
FIVE_POINTS = [Point(30, 40), Point(70, 40), Point(50, 60), Point(35, 80), Point(65, 80)]


def _fake_session(output: np.ndarray) -> MagicMock:
    session = MagicMock()
    model_input = MagicMock()
    model_input.name = "input"
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [output]
    return session


class TestFaceLandmarks:
    def test_positions_apply_shift(self) -> None:
        landmarks = FaceLandmarks(FIVE_POINTS, 100, 100).shift_by(10, 20)
        assert landmarks.positions[0] == Point(40, 60)
        assert landmarks.shift == Point(10, 20)
        assert len(landmarks) == 5

    def test_shifts_accumulate(self) -> None:
        landmarks = FaceLandmarks(FIVE_POINTS, 100, 100).shift_by(1, 2).shift_by(3, 4)
        assert landmarks.shift == Point(4, 6)

    def test_accepts_flat_array(self) -> None:
        landmarks = FaceLandmarks(np.array([1.0, 2.0, 3.0, 4.0], dtype=np.float32), 10, 10)
        assert landmarks.positions == [Point(1.0, 2.0), Point(3.0, 4.0)]

    def test_align_five_points(self) -> None:
        box = FaceLandmarks(FIVE_POINTS, 100, 100).align()
        # eye-to-mouth distance is sqrt(20^2 + 40^2) for both eyes
        size = int(np.floor(np.hypot(20, 40) / 0.45))
        center = Point(50, (40 + 40 + 80) / 3)
        assert box == Rect(int(np.floor(center.x - 0.5 * size)), int(np.floor(center.y - 0.43 * size)), size, size)

    def test_align_relative_to_box(self) -> None:
        landmarks = FaceLandmarks(FIVE_POINTS, 100, 100)
        local = landmarks.align()
        shifted = landmarks.align(Rect(50.7, 60.2, 100, 100))
        assert shifted == Rect(local.x + 50, local.y + 60, local.width, local.height)

    def test_align_68_points_uses_eye_and_mouth_groups(self) -> None:
        points = [Point(0, 0)] * 68
        points[36:42] = [Point(30, 40)] * 6
        points[42:48] = [Point(70, 40)] * 6
        points[48:68] = [Point(50, 80)] * 20
        assert FaceLandmarks(points, 100, 100).align() == FaceLandmarks(
            [Point(30, 40), Point(70, 40), Point(50, 60), Point(50, 80), Point(50, 80)], 100, 100
        ).align()

    def test_align_clamps_origin_at_zero(self) -> None:
        box = FaceLandmarks([Point(p.x - 40, p.y - 40) for p in FIVE_POINTS], 100, 100).align()
        assert box.x == 0
        assert box.y == 0

    def test_align_rejects_other_layouts(self) -> None:
        with pytest.raises(ValueError, match="expected 5 or 68"):
            FaceLandmarks([Point(0, 0)] * 3, 10, 10).align()


class TestOnnxFaceLandmarker:
    async def test_maps_output_back_to_crop_space(self) -> None:
        engine = NumpyTensorEngine()
        # Center of the padded square maps to the crop center; the top-left
        # of the resized crop maps to the crop origin.
        crop_h, crop_w = 50, 100
        pad_y = (112 - 56) // 2
        output = np.array([[0.5, 0.5, 0.0, pad_y / 112]], dtype=np.float32)
        manager = MagicMock()
        manager.get_session.return_value = _fake_session(output)
        landmarker = OnnxFaceLandmarker(manager, "face_landmark_68", engine)

        result = await landmarker.detect_landmarks(np.zeros((crop_h, crop_w, 3), dtype=np.float32))

        assert isinstance(result, FaceLandmarks)
        assert result.image_width == crop_w
        assert result.image_height == crop_h
        first, second = result.positions
        assert first.x == pytest.approx(50.0)
        assert first.y == pytest.approx((56 - pad_y) * crop_h / 56)
        assert second.x == pytest.approx(0.0)
        assert second.y == pytest.approx(0.0)
        assert engine.num_tensors == 0

    async def test_list_input_returns_list_in_order(self) -> None:
        engine = NumpyTensorEngine()
        output = np.array([[0.5, 0.5], [1.0, 1.0]], dtype=np.float32)
        manager = MagicMock()
        manager.get_session.return_value = _fake_session(output)
        landmarker = OnnxFaceLandmarker(manager, "face_landmark_68", engine)

        result = await landmarker.detect_landmarks(
            [np.zeros((10, 10, 3), dtype=np.float32), np.zeros((20, 20, 3), dtype=np.float32)]
        )

        assert isinstance(result, list)
        (first,) = result[0].positions
        (second,) = result[1].positions
        assert (first.x, first.y) == pytest.approx((5.0, 5.0))
        assert (second.x, second.y) == pytest.approx((20.0, 20.0))
        batch = manager.get_session.return_value.run.call_args.args[1]["input"]
        assert batch.shape == (2, 112, 112, 3)
