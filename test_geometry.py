"""
几何工具测试：IoU、NMS、检测框裁剪
"""
import numpy as np
import pytest

from threat_detector.utils.geometry import (
    clamp_box, compute_iou, draw_detections, non_max_suppression, resize_and_encode_image
)


def test_iou_identical_box_is_one():
    assert compute_iou([10, 10, 50, 50], [10, 10, 50, 50]) == pytest.approx(1.0)


def test_iou_is_symmetric():
    a = [0, 0, 40, 40]
    b = [20, 10, 70, 60]
    assert compute_iou(a, b) == pytest.approx(compute_iou(b, a))


def test_iou_partial_overlap():
    # 交集 20x40=800，并集 1600+1600-800=2400
    assert compute_iou([0, 0, 40, 40], [20, 0, 60, 40]) == pytest.approx(800 / 2400)


def test_iou_disjoint_and_touching_are_zero():
    assert compute_iou([0, 0, 10, 10], [20, 20, 30, 30]) == 0.0
    assert compute_iou([0, 0, 10, 10], [10, 0, 20, 10]) == 0.0


def test_iou_degenerate_boxes_are_zero():
    assert compute_iou([5, 5, 5, 5], [5, 5, 5, 5]) == 0.0
    assert compute_iou([0, 0, 0, 10], [0, 0, 10, 10]) == 0.0


def test_iou_ignores_label_and_confidence():
    assert compute_iou([0, 0, 10, 10, 'Fire', 0.9], [0, 0, 10, 10]) == pytest.approx(1.0)


def test_nms_suppresses_overlapping_lower_confidence():
    boxes = [
        [0, 0, 100, 100, 'Knife', 0.7],
        [2, 2, 100, 100, 'Knife', 0.9],
        [300, 300, 350, 350, 'Pistol', 0.8],
    ]
    kept = non_max_suppression(boxes, 0.5)

    assert [b[5] for b in kept] == [0.9, 0.8]


def test_nms_ties_keep_original_order():
    boxes = [
        [0, 0, 10, 10, 'a', 0.5],
        [100, 100, 110, 110, 'b', 0.5],
        [0, 0, 10, 10, 'c', 0.5],
    ]
    kept = non_max_suppression(boxes, 0.5)

    assert [b[4] for b in kept] == ['a', 'b']


def test_nms_output_properties():
    rng = np.random.default_rng(7)
    boxes = []
    for _ in range(40):
        x1, y1 = rng.uniform(0, 200, size=2)
        w, h = rng.uniform(5, 80, size=2)
        boxes.append([x1, y1, x1 + w, y1 + h, 'Fire', float(rng.uniform(0, 1))])

    kept = non_max_suppression(boxes, 0.5)

    assert len(kept) <= len(boxes)
    for i in range(len(kept)):
        for j in range(i + 1, len(kept)):
            assert compute_iou(kept[i], kept[j]) <= 0.5
    assert non_max_suppression(kept, 0.5) == kept


def test_nms_empty():
    assert non_max_suppression([], 0.5) == []


def test_clamp_box_to_image_bounds():
    assert clamp_box([-10, -5, 700, 500], 640, 480) == (0.0, 0.0, 640.0, 480.0)


def test_clamp_box_orders_corners():
    x1, y1, x2, y2 = clamp_box([50, 60, 10, 20], 640, 480)
    assert x1 <= x2 and y1 <= y2
    assert (x1, y1, x2, y2) == (10.0, 20.0, 50.0, 60.0)


def test_draw_and_encode_evidence_image():
    image = np.zeros((120, 160, 3), dtype=np.uint8)
    vis = draw_detections(image, [[20, 30, 80, 90, 'Fire', 0.91]])

    assert vis.shape == image.shape
    assert vis.any()
    assert not image.any()

    resized, b64 = resize_and_encode_image(vis, 80, 60)
    assert resized.shape[:2] == (60, 80)
    assert isinstance(b64, str) and len(b64) > 0
