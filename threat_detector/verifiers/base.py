"""
校验器抽象基类 - Verifier Base Class

定义误报过滤校验器的通用配置处理，以及失败时的放行策略
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from threat_detector.core.types import Detection


logger = logging.getLogger(__name__)


# ==================== 放行策略 ====================
# 有效帧不足2帧时，不判定为静态（继续走活体校验，宁可多报）
INSUFFICIENT_MOTION_EVIDENCE_IS_STATIC = False

# 深度模型不可用或推理异常时，视为真实物体（不因模型故障吞掉报警）
DEPTH_FAILURE_IS_LIVE = True

# 闪烁校验帧数不足3帧时，不判定为闪烁
INSUFFICIENT_FLICKER_FRAMES_IS_LIVE = False


class Verifier(ABC):
    """校验器抽象基类"""

    # 子类默认配置
    DEFAULTS: Dict = {}

    def __init__(self, config: Dict = None):
        """
        Args:
            config: 校验器配置（缺省项使用 DEFAULTS）
        """
        self.config = dict(self.DEFAULTS)
        if config:
            self.config.update(config)

        self._init_verifier_specific()

    @abstractmethod
    def _init_verifier_specific(self):
        """校验器特定的初始化（子类实现）"""
        pass

    def threshold(self, name: str, settings=None):
        """
        读取阈值：优先用户运行时配置，否则使用校验器配置

        Args:
            name: 阈值名（同时是 DetectionSettings 的字段名）
            settings: 用户运行时配置（可为空）
        """
        if settings is not None:
            value = getattr(settings, name, None)
            if value is not None:
                return value
        return self.config[name]


def top_detection(detections: List[Detection]) -> Optional[Detection]:
    """取置信度最高的检测框（同分取第一个）"""
    best = None
    for det in detections:
        if best is None or det.confidence > best.confidence:
            best = det
    return best
