"""
Tests for the overlay renderer
"""

import numpy as np

from blob_tracker import OverlayRenderer, Target, format_label


def make_target(centroid=(50, 50), area=400.0, bbox=(40, 40, 21, 21)):
    return Target(centroid=centroid, area=area, bbox=bbox)


def test_render_does_not_mutate_and_is_repeatable():
    base = np.zeros((100, 100, 3), np.uint8)
    targets = [make_target()]
    renderer = OverlayRenderer()

    first = renderer.render(base, targets, 100)
    second = renderer.render(base, targets, 100)

    assert np.array_equal(first, second)
    assert not base.any()
    assert first is not base
    assert first.any()


def test_box_and_marker_colors():
    out = OverlayRenderer().render(np.zeros((100, 100, 3), np.uint8), [make_target()], 100)
    assert list(out[50, 40]) == [0, 0, 255]       # left edge of the box
    assert list(out[50, 50]) == [230, 255, 255]   # centroid marker


def test_targets_at_or_below_min_area_are_skipped():
    base = np.zeros((100, 100, 3), np.uint8)
    out = OverlayRenderer().render(base, [make_target(area=400.0)], 400)
    assert np.array_equal(out, base)


def test_label_above_top_edge_is_accepted():
    base = np.zeros((60, 60, 3), np.uint8)
    target = make_target(centroid=(10, 5), bbox=(0, 0, 20, 10))
    out = OverlayRenderer().render(base, [target], 0)
    assert out.shape == base.shape


def test_bgra_overlay_is_opaque():
    base = np.zeros((100, 100, 4), np.uint8)
    out = OverlayRenderer().render(base, [make_target()], 100)
    assert list(out[50, 50]) == [230, 255, 255, 255]


def test_label_has_coordinates_and_area():
    assert format_label(make_target(centroid=(12, 34), area=567.0)) == "12, 34 :: 567.0"
