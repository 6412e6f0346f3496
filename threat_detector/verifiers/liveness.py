"""
活体校验 - Liveness Verifier

功能：
- 深度校验（武器/盗窃）：检测框内深度方差，平面照片/屏幕深度近乎一致
- 闪烁校验（火灾/烟雾）：连续两次帧差都超过阈值的像素比例，
  真实火焰持续闪烁，静态图片和循环视频没有这种两步变化
"""
import logging
import math
from typing import List, Sequence, Union

import cv2
import numpy as np

from threat_detector.core.model_server import ModelHandle, ModelUnavailableError
from threat_detector.core.types import DetectionClass, Frame, LivenessVerdict
from .base import Verifier, DEPTH_FAILURE_IS_LIVE, INSUFFICIENT_FLICKER_FRAMES_IS_LIVE


logger = logging.getLogger(__name__)


def _as_image(frame: Union[Frame, np.ndarray]):
    if isinstance(frame, Frame):
        return frame.image
    return frame


class LivenessVerifier(Verifier):
    """深度/闪烁活体校验"""

    DEFAULTS = {
        'depth_std_threshold': 0.001,
        'flicker_diff_threshold': 15,
        'flicker_ratio_threshold': 0.005,
        'flicker_size': 100,
    }

    def __init__(self, depth_handle: ModelHandle, config=None):
        """
        Args:
            depth_handle: 深度估计模型句柄（懒加载）
            config: 阈值配置
        """
        self.depth_handle = depth_handle
        super().__init__(config)

    def _init_verifier_specific(self):
        self.flicker_size = int(self.config['flicker_size'])

    def verify(self, detection_class: DetectionClass, frames: Sequence[Frame],
               frame: Frame, box: Sequence[float], settings=None) -> LivenessVerdict:
        """
        按检测类别选择校验方式

        Args:
            detection_class: 检测类别
            frames: 本轮抓到的所有帧（按时间顺序，火灾闪烁校验用）
            frame: 最后一个触发检测的帧（深度校验用）
            box: 该帧置信度最高的检测框
            settings: 用户运行时配置（可为空）
        """
        if detection_class == DetectionClass.FIRE:
            return self.is_flickering(frames, box, settings)
        return self.is_real_3d(frame, box, settings)

    def is_real_3d(self, frame: Union[Frame, np.ndarray], box: Sequence[float],
                   settings=None) -> LivenessVerdict:
        """
        深度方差校验

        Returns:
            LivenessVerdict: is_live=True 表示真实立体物体
        """
        try:
            estimator = self.depth_handle.get()
        except ModelUnavailableError as e:
            logger.warning(f"深度模型不可用，按真实物体处理: {e}")
            return LivenessVerdict(DEPTH_FAILURE_IS_LIVE, 0.0, 'depth', 'depth_model_unavailable')

        try:
            image = _as_image(frame)
            if image is None:
                raise ValueError("图像解码失败")

            depth = estimator.estimate_depth(image)
            map_h, map_w = depth.shape[:2]
            img_h, img_w = image.shape[:2]

            # 原图坐标 → 深度图坐标
            scale_x = map_w / img_w
            scale_y = map_h / img_h
            x1, y1, x2, y2 = box[:4]
            bx = math.floor(x1 * scale_x)
            by = math.floor(y1 * scale_y)
            bw = math.floor((x2 - x1) * scale_x)
            bh = math.floor((y2 - y1) * scale_y)

            region = depth[max(by, 0):min(by + bh, map_h), max(bx, 0):min(bx + bw, map_w)]
            if region.size == 0:
                return LivenessVerdict(False, 0.0, 'depth', 'empty_region')

            std = float(np.std(region))
            threshold = self.threshold('depth_std_threshold', settings)
            is_live = std > threshold

            logger.debug(f"深度统计: std={std:.5f} min={float(region.min()):.5f} "
                         f"max={float(region.max()):.5f} 阈值={threshold}")

            return LivenessVerdict(is_live, std, 'depth', 'depth_variance' if is_live else 'flat_surface')

        except Exception as e:
            logger.error(f"深度校验异常，按真实物体处理: {e}", exc_info=True)
            return LivenessVerdict(DEPTH_FAILURE_IS_LIVE, 0.0, 'depth', 'depth_error')

    def is_flickering(self, frames: Sequence[Union[Frame, np.ndarray]], box: Sequence[float],
                      settings=None) -> LivenessVerdict:
        """
        闪烁校验（取前3帧）

        Returns:
            LivenessVerdict: is_live=True 表示区域在持续闪烁
        """
        if len(frames) < 3:
            return LivenessVerdict(INSUFFICIENT_FLICKER_FRAMES_IS_LIVE, 0.0, 'flicker', 'insufficient_frames')

        try:
            x1 = max(0, math.floor(box[0]))
            y1 = max(0, math.floor(box[1]))
            width = math.floor(box[2] - box[0])
            height = math.floor(box[3] - box[1])

            if width <= 0 or height <= 0:
                return LivenessVerdict(False, 0.0, 'flicker', 'degenerate_box')

            crops: List[np.ndarray] = []
            for frame in list(frames)[:3]:
                image = _as_image(frame)
                if image is None:
                    raise ValueError("图像解码失败")

                crop = image[y1:y1 + height, x1:x1 + width]
                if crop.size == 0:
                    return LivenessVerdict(False, 0.0, 'flicker', 'empty_region')

                gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
                crops.append(cv2.resize(gray, (self.flicker_size, self.flicker_size),
                                        interpolation=cv2.INTER_LINEAR).astype(np.int16))

            diff_threshold = self.threshold('flicker_diff_threshold', settings)
            ratio_threshold = self.threshold('flicker_ratio_threshold', settings)

            d1 = np.abs(crops[0] - crops[1])
            d2 = np.abs(crops[1] - crops[2])
            moving = np.count_nonzero((d1 > diff_threshold) & (d2 > diff_threshold))
            ratio = moving / crops[0].size

            is_live = ratio > ratio_threshold
            logger.debug(f"闪烁比例: {ratio:.5f} 阈值={ratio_threshold}")

            return LivenessVerdict(is_live, ratio, 'flicker', 'flickering' if is_live else 'no_flicker')

        except Exception as e:
            logger.error(f"闪烁校验异常: {e}", exc_info=True)
            return LivenessVerdict(False, 0.0, 'flicker', 'flicker_error')
