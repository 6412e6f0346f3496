"""
检测器测试：LetterBox、RT-DETR/YOLOv8输出解析、深度估计
"""
import numpy as np
import pytest

from threat_detector.core.detector import (
    DepthEstimator, FireSmokeDetector, OnnxDetector, TheftDetector, WeaponDetector, letterbox
)
from conftest import FakeSession, make_jpeg


def test_letterbox_wide_image():
    image = np.zeros((640, 1280, 3), dtype=np.uint8)
    padded, info = letterbox(image, 640)

    assert padded.shape == (640, 640, 3)
    assert info.scale == pytest.approx(0.5)
    assert (info.pad_top, info.pad_left) == (160, 0)
    assert (info.orig_width, info.orig_height) == (1280, 640)
    # 上下为灰色填充
    assert (padded[0, 0] == 114).all()
    assert (padded[320, 320] == 0).all()


def test_letterbox_square_image_no_padding():
    image = np.zeros((320, 320, 3), dtype=np.uint8)
    padded, info = letterbox(image, 640)

    assert padded.shape == (640, 640, 3)
    assert info.scale == pytest.approx(2.0)
    assert (info.pad_top, info.pad_left) == (0, 0)


def _fire_output(rows):
    data = np.zeros((1, 300, 7), dtype=np.float32)
    for i, row in enumerate(rows):
        data[0, i] = row
    return data


def test_fire_combined_output_decodes_to_source_pixels():
    session = FakeSession({'output': _fire_output([
        [0.5, 0.5, 0.25, 0.125, 0.9, 0.05, 0.0],   # Fire
        [0.2, 0.2, 0.1, 0.1, 0.0, 0.0, 0.99],      # Other → 不报警
        [0.8, 0.8, 0.1, 0.1, 0.8, 0.0, 0.0],       # 低于0.85
    ])})
    detector = FireSmokeDetector(session)

    result = detector.infer(make_jpeg(1280, 640))

    assert len(result['boxes']) == 1
    x1, y1, x2, y2, label, conf = result['boxes'][0]
    assert label == 'Fire'
    assert conf == pytest.approx(0.9, abs=1e-6)
    assert (x1, y1, x2, y2) == pytest.approx((480, 240, 800, 400), abs=1e-3)

    feed = session.feeds[0]['images']
    assert feed.shape == (1, 3, 640, 640)
    assert feed.dtype == np.float32
    assert feed.max() <= 1.0


def test_fire_smoke_label_and_threshold_override():
    session = FakeSession({'output': _fire_output([
        [0.5, 0.5, 0.2, 0.2, 0.1, 0.88, 0.0],
    ])})
    detector = FireSmokeDetector(session)

    assert detector.infer(make_jpeg(640, 640))['boxes'][0][4] == 'Smoke'
    assert detector.infer(make_jpeg(640, 640), conf_threshold=0.95)['boxes'] == []


def test_weapon_separate_outputs_with_nms():
    boxes = np.zeros((1, 300, 4), dtype=np.float32)
    scores = np.zeros((1, 300, 2), dtype=np.float32)
    boxes[0, 0] = [0.5, 0.5, 0.2, 0.2]
    scores[0, 0] = [0.9, 0.1]
    boxes[0, 1] = [0.5, 0.5, 0.2, 0.21]   # 同一把刀的重复框
    scores[0, 1] = [0.8, 0.1]
    boxes[0, 2] = [0.1, 0.1, 0.1, 0.1]
    scores[0, 2] = [0.0, 0.7]             # Pistol
    boxes[0, 3] = [0.9, 0.9, 0.1, 0.1]
    scores[0, 3] = [0.6, 0.0]             # 低于0.65

    detector = WeaponDetector(FakeSession({'boxes': boxes, 'scores': scores}))
    result = detector.infer(make_jpeg(640, 640))

    labels = [(b[4], round(b[5], 2)) for b in result['boxes']]
    assert labels == [('Knife', 0.9), ('Pistol', 0.7)]


def test_theft_channel_major_output():
    data = np.zeros((1, 6, 8400), dtype=np.float32)
    data[0, :, 0] = [320, 320, 160, 80, 0.7, 0.1]   # Theft
    data[0, :, 1] = [100, 100, 50, 50, 0.2, 0.9]    # Normal → 忽略
    data[0, :, 2] = [500, 500, 50, 50, 0.4, 0.0]    # 低于0.5

    detector = TheftDetector(FakeSession({'output0': data}))
    result = detector.infer(make_jpeg(640, 640))

    assert len(result['boxes']) == 1
    box = result['boxes'][0]
    assert box[4] == 'Theft'
    assert box[:4] == pytest.approx([240, 280, 400, 360], abs=1e-3)


def test_boxes_are_clamped_to_image():
    session = FakeSession({'output': _fire_output([
        [0.02, 0.02, 0.2, 0.2, 0.95, 0.0, 0.0],
    ])})
    x1, y1, x2, y2 = FireSmokeDetector(session).infer(make_jpeg(640, 640))['boxes'][0][:4]

    assert x1 == 0.0 and y1 == 0.0
    assert x1 <= x2 and y1 <= y2


def test_base_detector_requires_output_decoder():
    with pytest.raises(TypeError):
        OnnxDetector(FakeSession({'output': np.zeros((1, 1, 7), np.float32)}))


def test_inference_errors_yield_empty_result():
    detector = FireSmokeDetector(FakeSession(RuntimeError('boom')))
    assert detector.infer(make_jpeg()) == {'boxes': []}


def test_undecodable_image_yields_empty_result():
    detector = FireSmokeDetector(FakeSession({'output': _fire_output([])}))
    assert detector.infer(b'not a jpeg') == {'boxes': []}


def test_depth_estimator_normalizes_and_resizes():
    session = FakeSession({'depth': np.ones((1, 1, 100, 100), dtype=np.float32)}, input_name='pixel_values')
    estimator = DepthEstimator(session)

    depth = estimator.estimate_depth(np.full((240, 320, 3), 128, dtype=np.uint8))

    assert depth.shape == (518, 518)
    feed = session.feeds[0]['pixel_values']
    assert feed.shape == (1, 3, 518, 518)
    # 归一化后 128/255 在每个通道都接近 (0.502 - mean) / std
    assert feed[0, 0, 0, 0] == pytest.approx((128 / 255 - 0.485) / 0.229, abs=1e-4)
