"""
运动校验 - Motion Verifier

同一位置的检测框在多帧中几乎不动（平均IoU很高），
通常是海报、屏幕、画作等静态图像触发的误报。

注意：每帧只比较置信度最高的一个框，画面中有多个目标时可能把
不同目标之间的位置差异当成运动。
"""
import logging

from threat_detector.core.types import FrameBurst, MotionVerdict
from threat_detector.utils.geometry import compute_iou
from .base import Verifier, top_detection, INSUFFICIENT_MOTION_EVIDENCE_IS_STATIC


logger = logging.getLogger(__name__)


class MotionVerifier(Verifier):
    """平均IoU运动分析"""

    DEFAULTS = {
        'static_iou_threshold': 0.8,
    }

    def _init_verifier_specific(self):
        self.static_iou_threshold = float(self.config['static_iou_threshold'])

    def analyze(self, burst: FrameBurst, settings=None) -> MotionVerdict:
        """
        分析多帧检测框是否静止

        Args:
            burst: [(Frame, [Detection, ...]), ...]
            settings: 用户运行时配置（可为空）

        Returns:
            MotionVerdict: is_static=True 表示静态误报
        """
        if len(burst) < 2:
            return MotionVerdict(
                is_static=INSUFFICIENT_MOTION_EVIDENCE_IS_STATIC,
                metric=0.0,
                reason='insufficient_frames',
                frames_analyzed=len(burst),
            )

        boxes = []
        for _, detections in burst:
            best = top_detection(detections)
            if best is not None:
                boxes.append(best.box)

        if len(boxes) < 2:
            return MotionVerdict(
                is_static=INSUFFICIENT_MOTION_EVIDENCE_IS_STATIC,
                metric=0.0,
                reason='insufficient_boxes',
                frames_analyzed=len(burst),
            )

        ious = [compute_iou(boxes[i], boxes[i + 1]) for i in range(len(boxes) - 1)]
        avg_iou = sum(ious) / len(ious)

        threshold = self.threshold('static_iou_threshold', settings)
        is_static = avg_iou > threshold

        logger.debug(f"运动分析: IoU={[round(v, 3) for v in ious]} 平均={avg_iou:.3f} "
                     f"阈值={threshold} → {'静态' if is_static else '运动'}")

        return MotionVerdict(
            is_static=is_static,
            metric=avg_iou,
            reason='static_box' if is_static else 'moving_box',
            ious=ious,
            frames_analyzed=len(burst),
        )
