"""
数据模型 - Data Model

功能：
- 摄像头登记副本（Camera）
- 摄像头运行时状态（CameraRuntimeState）
- 帧、检测结果、多帧序列（Frame / Detection / FrameBurst）
- 校验结论与报警（MotionVerdict / LivenessVerdict / Alert）
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np


class DetectionClass(str, Enum):
    """检测类别（每路摄像头选择一种）"""
    FIRE = 'fire'
    WEAPON = 'weapon'
    THEFT = 'theft'

    @classmethod
    def parse(cls, value) -> 'DetectionClass':
        """宽松解析：兼容 'FIRE' / 'fire' / 'LOCAL'（旧版本火灾检测的取值）"""
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        if text in ('', 'local', 'fire_smoke', 'smoke'):
            return cls.FIRE
        return cls(text)


@dataclass
class Camera:
    """摄像头登记副本（权威数据在外部存储中）"""
    id: int
    user_id: str
    name: str = ''
    ip: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    stream_path: str = '/live'
    stream_url: Optional[str] = None
    detection_class: DetectionClass = DetectionClass.FIRE
    active: bool = True

    @property
    def camera_key(self) -> str:
        return f"{self.user_id}_{self.id}"


@dataclass
class CameraRuntimeState:
    """摄像头运行时状态（仅调度器持有，不持久化）"""
    last_checked: Optional[datetime] = None
    is_alarmed: bool = False
    consecutive_static: int = 0


@dataclass
class Frame:
    """单帧图像（本轮检测结束后丢弃）"""
    camera_id: int
    image_bytes: bytes
    timestamp: datetime
    _image: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @property
    def image(self) -> Optional[np.ndarray]:
        """解码后的BGR图像（只解码一次，失败返回None）"""
        if self._image is None and self.image_bytes:
            buffer = np.frombuffer(self.image_bytes, dtype=np.uint8)
            self._image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        return self._image


@dataclass
class Detection:
    """检测框（原图像素坐标）"""
    label: str
    confidence: float
    box: Tuple[float, float, float, float]

    def as_list(self) -> list:
        x1, y1, x2, y2 = self.box
        return [x1, y1, x2, y2, self.label, self.confidence]

    @classmethod
    def from_list(cls, item) -> 'Detection':
        x1, y1, x2, y2, label, confidence = item
        return cls(label=str(label), confidence=float(confidence),
                   box=(float(x1), float(y1), float(x2), float(y2)))


# 一轮检测的多帧序列：[(Frame, [Detection, ...]), ...]
FrameBurst = List[Tuple[Frame, List[Detection]]]


@dataclass
class MotionVerdict:
    """运动校验结论"""
    is_static: bool
    metric: float
    reason: str
    ious: List[float] = field(default_factory=list)
    frames_analyzed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isStatic': self.is_static,
            'avgIoU': round(self.metric, 3),
            'ious': [round(v, 3) for v in self.ious],
            'reason': self.reason,
            'framesAnalyzed': self.frames_analyzed,
        }


@dataclass
class LivenessVerdict:
    """活体校验结论"""
    is_live: bool
    metric: float
    method: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isLive': self.is_live,
            'metric': round(self.metric, 5),
            'method': self.method,
            'reason': self.reason,
        }


@dataclass
class Alert:
    """确认后的报警（交给外部分发器，不持久化）"""
    camera_id: int
    user_id: str
    camera_name: str
    detection_class: DetectionClass
    detection: Detection
    evidence_image: bytes
    motion: MotionVerdict
    liveness: LivenessVerdict
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def confidence(self) -> float:
        return self.detection.confidence

    def to_payload(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'cameraId': self.camera_id,
            'cameraName': self.camera_name,
            'detectionClass': self.detection_class.value,
            'confidence': self.confidence,
            'evidenceImageBytes': self.evidence_image,
            'verification': {
                'motion': self.motion.to_dict(),
                'liveness': self.liveness.to_dict(),
            },
        }
