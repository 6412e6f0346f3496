"""
测试公共工具：假ONNX会话、假时钟、假帧源、假模型服务
"""
from datetime import datetime, timedelta

import cv2
import numpy as np
import pytest

from threat_detector.core.frame_source import FrameCaptureError
from threat_detector.core.model_server import ModelUnavailableError
from threat_detector.core.types import Camera, DetectionClass, Frame, LivenessVerdict


def make_jpeg(width=64, height=64, value=0) -> bytes:
    image = np.full((height, width, 3), value, dtype=np.uint8)
    ok, buffer = cv2.imencode('.jpg', image)
    assert ok
    return buffer.tobytes()


class FakeNode:
    def __init__(self, name):
        self.name = name


class FakeSession:
    """onnxruntime.InferenceSession 的替身"""

    def __init__(self, outputs, input_name='images'):
        self.outputs = outputs
        self.input_name = input_name
        self.feeds = []

    def get_inputs(self):
        return [FakeNode(self.input_name)]

    def get_outputs(self):
        if isinstance(self.outputs, Exception):
            return [FakeNode('output')]
        return [FakeNode(name) for name in self.outputs]

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        if isinstance(self.outputs, Exception):
            raise self.outputs
        return list(self.outputs.values())


class FakeClock:
    """记录睡眠和等待，不真正阻塞"""

    def __init__(self):
        self.current = datetime(2025, 1, 1, 12, 0, 0)
        self.ticks = 0.0
        self.sleeps = []
        self.waits = []

    def now(self):
        return self.current

    def monotonic(self):
        self.ticks += 0.01
        return self.ticks

    def sleep(self, seconds):
        self.sleeps.append(round(seconds, 3))
        self.current += timedelta(seconds=seconds)

    def wait(self, event, seconds):
        self.waits.append(round(seconds, 3))
        return event.wait(0.001)


class FakeFrameSource:
    """按摄像头返回JPEG帧；可注入失败和抓帧回调"""

    def __init__(self, image_bytes=None):
        self.image_bytes = image_bytes or make_jpeg()
        self.failures = {}      # camera_id -> 需要失败的抓帧序号集合
        self.on_capture = None  # fn(camera, index)
        self.captured = []

    def capture(self, camera):
        index = sum(1 for cid in self.captured if cid == camera.id)
        self.captured.append(camera.id)
        if self.on_capture is not None:
            self.on_capture(camera, index)
        if index in self.failures.get(camera.id, ()):
            raise FrameCaptureError(f"模拟抓帧失败 {camera.id}#{index}")
        return Frame(camera_id=camera.id, image_bytes=self.image_bytes, timestamp=datetime(2025, 1, 1))


class FakeHandle:
    def __init__(self, instance=None, error=None):
        self.instance = instance
        self.error = error

    def get(self):
        if self.error is not None:
            raise ModelUnavailableError(str(self.error))
        return self.instance


class FakeModelServer:
    """按顺序返回预设检测框；未预设时返回空"""

    def __init__(self):
        self.results = []
        self.calls = []
        self.depth = FakeHandle(error=RuntimeError('no depth model'))

    def infer(self, detection_class, image_bytes, conf_threshold=None):
        self.calls.append((detection_class, conf_threshold))
        if not self.results:
            return []
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeLiveness:
    def __init__(self, is_live=True):
        self.is_live = is_live
        self.calls = []

    def verify(self, detection_class, frames, frame, box, settings=None):
        self.calls.append((detection_class, len(frames), tuple(box)))
        return LivenessVerdict(self.is_live, 0.5, 'fake', 'live' if self.is_live else 'flat')


class FakeDispatcher:
    def __init__(self):
        self.alerts = []

    def dispatch(self, alert):
        self.alerts.append(alert)


def make_camera(camera_id, user_id='user-1', detection_class=DetectionClass.FIRE, **kwargs):
    kwargs.setdefault('ip', f'10.0.0.{camera_id}')
    return Camera(id=camera_id, user_id=user_id, name=f'cam-{camera_id}',
                  detection_class=detection_class, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def frame_source():
    return FakeFrameSource()


@pytest.fixture
def model_server():
    return FakeModelServer()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()
