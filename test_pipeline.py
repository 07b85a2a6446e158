"""
Pipeline integration tests plus settings and display helpers
"""

import dataclasses

import numpy as np
import pytest

from blob_tracker import (
    BlobPipeline, CameraSettings, VisionOperationFailed, apply_mask, to_rgba,
)
from create_demo_video import render_demo_frame

RED_SETTINGS = CameraSettings(lower_bound=(0, 120, 70), upper_bound=(10, 255, 255), min_area=500)


def scene():
    """Black frame with a large red block, a small red block and a green block"""
    img = np.zeros((480, 640, 3), np.uint8)
    img[100:200, 100:220] = (0, 0, 255)   # 120x100, kept
    img[400:410, 500:510] = (0, 0, 255)   # 10x10, below min_area
    img[300:400, 300:400] = (0, 255, 0)   # wrong color
    return img


def test_process_finds_the_large_red_block():
    img = scene()
    before = img.copy()

    mask, targets, overlay = BlobPipeline().process(img, RED_SETTINGS)

    assert mask.shape == (480, 640)
    assert len(targets) == 1
    cx, cy = targets[0].centroid
    assert abs(cx - 159) <= 2
    assert abs(cy - 149) <= 2
    assert targets[0].area > 500
    assert np.array_equal(img, before)
    assert not np.array_equal(overlay, img)


def test_process_on_blank_frame_has_no_targets():
    blank = np.zeros((480, 640, 3), np.uint8)
    mask, targets, overlay = BlobPipeline().process(blank, RED_SETTINGS)
    assert not mask.any()
    assert targets == []
    assert np.array_equal(overlay, blank)


def test_min_area_from_snapshot_applies():
    strict = RED_SETTINGS.replace(min_area=50000)
    assert BlobPipeline().process(scene(), strict).targets == []


def test_demo_frame_targets():
    frame = render_demo_frame(0, width=640, height=480)
    targets = BlobPipeline().process(frame, RED_SETTINGS).targets

    # orbiting disc plus sweeping square
    assert len(targets) == 2
    assert any(abs(t.centroid[0] - 440) <= 3 and abs(t.centroid[1] - 240) <= 3 for t in targets)


def test_pipeline_keeps_last_frames_and_previews():
    pipeline = BlobPipeline()
    img = scene()
    result = pipeline.process(img, RED_SETTINGS)

    assert pipeline.last_frame is img
    assert pipeline.frame_count == 1

    color = pipeline.preview(result, RED_SETTINGS)
    assert color[150, 150].tolist() == [0, 0, 255]
    assert color[350, 350].tolist() == [0, 0, 0]

    gray = pipeline.preview(result, RED_SETTINGS.replace(gray_preview=True))
    assert gray.shape == (480, 640, 3)
    assert gray[150, 150].tolist() == [255, 255, 255]


# -- settings -------------------------------------------------------------------

def test_settings_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        RED_SETTINGS.min_area = 1


@pytest.mark.parametrize("bound", [(0, 0, 256), (0, 0), (-1, 0, 0)])
def test_settings_reject_bad_bounds(bound):
    with pytest.raises(ValueError):
        CameraSettings(lower_bound=bound)


def test_settings_dict_round_trip():
    settings = RED_SETTINGS.replace(flip_frame=True)
    assert CameraSettings.from_dict(settings.to_dict()) == settings


def test_settings_from_partial_dict_keeps_defaults():
    settings = CameraSettings.from_dict({"min_area": 42, "unknown": 1})
    assert settings.min_area == 42.0
    assert settings.lower_bound == CameraSettings().lower_bound


# -- display helpers ------------------------------------------------------------

def test_to_rgba_swaps_channels_and_adds_alpha():
    img = np.array([[[255, 0, 0], [0, 0, 255]]], np.uint8)  # blue, red in BGR
    frame = to_rgba(img)
    assert (frame.width, frame.height) == (2, 1)
    assert frame.pixels == bytes([0, 0, 255, 255, 255, 0, 0, 255])


def test_to_rgba_accepts_mask():
    frame = to_rgba(np.full((2, 3), 255, np.uint8))
    assert (frame.width, frame.height) == (3, 2)
    assert len(frame.pixels) == 2 * 3 * 4


def test_to_rgba_rejects_float_images():
    with pytest.raises(VisionOperationFailed):
        to_rgba(np.zeros((2, 2, 3), np.float32))


def test_apply_mask_keeps_foreground_only():
    img = np.full((2, 2, 3), 200, np.uint8)
    mask = np.array([[255, 0], [0, 255]], np.uint8)
    out = apply_mask(img, mask)
    assert out[0, 0].tolist() == [200, 200, 200]
    assert out[0, 1].tolist() == [0, 0, 0]
