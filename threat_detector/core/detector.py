"""
威胁检测器 - Threat Detectors

功能：
- 封装ONNX模型推理（火灾/烟雾、武器、盗窃动作）
- LetterBox预处理（保持长宽比，灰色填充）
- 后处理：阈值过滤 + 坐标还原 + 裁剪 + NMS
- 深度估计模型（用于活体校验）

统一输出格式：
    {'boxes': [[x1, y1, x2, y2, label, conf], ...]}  # 原图像素坐标，置信度降序
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Sequence, Union

import cv2
import numpy as np

from threat_detector.utils.geometry import clamp_box, non_max_suppression


logger = logging.getLogger(__name__)


class LetterboxInfo(NamedTuple):
    """LetterBox变换参数（用于坐标还原）"""
    scale: float
    pad_top: int
    pad_left: int
    orig_width: int
    orig_height: int


def letterbox(image: np.ndarray, target_size: int = 640,
              pad_value=(114, 114, 114)) -> (np.ndarray, LetterboxInfo):
    """
    LetterBox缩放到固定正方形输入（与Ultralytics LetterBox center=True一致）

    Args:
        image: 图像 (H, W, 3)
        target_size: 目标尺寸
        pad_value: 填充颜色

    Returns:
        padded: (target_size, target_size, 3) 图像
        info: 缩放比例和padding信息
    """
    h0, w0 = image.shape[:2]

    # 计算缩放比例
    r = min(target_size / h0, target_size / w0)

    # 计算新尺寸（使用round而不是int截断）
    new_w = int(round(w0 * r))
    new_h = int(round(h0 * r))

    if (new_w, new_h) != (w0, h0):
        interp = cv2.INTER_LINEAR if r > 1 else cv2.INTER_AREA
        image = cv2.resize(image, (new_w, new_h), interpolation=interp)

    # 居中padding
    dw = (target_size - new_w) / 2
    dh = (target_size - new_h) / 2
    top = int(round(dh - 0.1))
    bottom = int(round(dh + 0.1))
    left = int(round(dw - 0.1))
    right = int(round(dw + 0.1))

    padded = cv2.copyMakeBorder(image, top, bottom, left, right,
                                cv2.BORDER_CONSTANT, value=pad_value)

    # 四舍五入可能多出/少1个像素，统一到目标尺寸
    if padded.shape[0] != target_size or padded.shape[1] != target_size:
        padded = cv2.resize(padded, (target_size, target_size), interpolation=cv2.INTER_LINEAR)

    return padded, LetterboxInfo(r, top, left, w0, h0)


def decode_image(image: Union[bytes, bytearray, np.ndarray]):
    """JPEG字节 → BGR图像（已经是数组则原样返回）"""
    if isinstance(image, np.ndarray):
        return image
    buffer = np.frombuffer(image, dtype=np.uint8)
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)


class OnnxDetector(ABC):
    """ONNX检测器基类（子类只负责解析模型输出）"""

    # 子类配置
    name = 'detector'
    class_names: Sequence[str] = ()
    alarm_labels: Sequence[str] = ()
    default_conf_threshold = 0.5
    nms_iou_threshold = 0.5
    input_size = 640

    def __init__(self, session, conf_threshold: float = None, nms_iou_threshold: float = None):
        """
        Args:
            session: onnxruntime.InferenceSession（或同接口对象）
            conf_threshold: 置信度阈值（为空则使用类别默认值）
            nms_iou_threshold: NMS IOU阈值
        """
        self.session = session
        self.conf_threshold = conf_threshold if conf_threshold is not None else self.default_conf_threshold
        if nms_iou_threshold is not None:
            self.nms_iou_threshold = nms_iou_threshold

        self.input_name = session.get_inputs()[0].name
        self.output_names = [o.name for o in session.get_outputs()]

        logger.info(f"✓ {self.name} 检测器初始化完成 "
                    f"(conf={self.conf_threshold}, nms_iou={self.nms_iou_threshold}, 输出: {self.output_names})")

    def preprocess(self, image: np.ndarray):
        """
        预处理：LetterBox + BGR→RGB + 归一化 + CHW

        Returns:
            tensor: (1, 3, S, S) float32
            info: LetterboxInfo
        """
        padded, info = letterbox(image, self.input_size)

        rgb = cv2.cvtColor(padded, cv2.COLOR_BGR2RGB)
        tensor = rgb.transpose(2, 0, 1).astype(np.float32) / 255.0
        tensor = np.ascontiguousarray(tensor[np.newaxis, ...])

        return tensor, info

    def run(self, tensor: np.ndarray) -> Dict[str, np.ndarray]:
        """前向推理，返回 {输出名: 数组}"""
        outputs = self.session.run(None, {self.input_name: tensor})
        return dict(zip(self.output_names, outputs))

    @abstractmethod
    def decode_outputs(self, outputs: Dict[str, np.ndarray]):
        """
        解析模型输出（子类实现）

        Returns:
            boxes: (N, 4) [cx, cy, w, h]，输入图像（S×S）像素坐标
            scores: (N, C) 各类别得分
        """
        pass

    def postprocess(self, boxes: np.ndarray, scores: np.ndarray, info: LetterboxInfo,
                    conf_threshold: float) -> List[list]:
        """
        后处理：取最高分类别 → 阈值过滤 → 中心点转角点 → 去除LetterBox → 裁剪 → NMS

        Returns:
            List[list]: [[x1, y1, x2, y2, label, conf], ...]
        """
        if boxes is None or len(boxes) == 0:
            return []

        cls_ids = scores.argmax(axis=1)
        confs = scores[np.arange(len(scores)), cls_ids]

        self._log_top_scores(confs, cls_ids)

        candidates = []
        for i in np.flatnonzero(confs >= conf_threshold):
            cls_id = int(cls_ids[i])
            label = self.class_names[cls_id] if cls_id < len(self.class_names) else 'Unknown'
            if label not in self.alarm_labels:
                continue

            cx, cy, w, h = boxes[i][:4]

            # 去除padding和缩放
            x1 = (cx - w / 2 - info.pad_left) / info.scale
            y1 = (cy - h / 2 - info.pad_top) / info.scale
            x2 = (cx + w / 2 - info.pad_left) / info.scale
            y2 = (cy + h / 2 - info.pad_top) / info.scale

            x1, y1, x2, y2 = clamp_box((x1, y1, x2, y2), info.orig_width, info.orig_height)
            candidates.append([x1, y1, x2, y2, label, float(confs[i])])

        kept = non_max_suppression(candidates, self.nms_iou_threshold)

        logger.debug(f"{self.name}: 阈值后 {len(candidates)} 个，NMS后 {len(kept)} 个 (conf>={conf_threshold})")
        return kept

    def _log_top_scores(self, confs: np.ndarray, cls_ids: np.ndarray, k: int = 5):
        """调试用：记录最高的几个原始得分（不受阈值影响）"""
        if not logger.isEnabledFor(logging.DEBUG):
            return
        order = np.argsort(-confs)[:k]
        top = []
        for i in order:
            cls_id = int(cls_ids[i])
            label = self.class_names[cls_id] if cls_id < len(self.class_names) else 'Unknown'
            top.append(f"{label}:{confs[i]:.4f}")
        logger.debug(f"{self.name}: Top{k} 原始得分 {top}")

    def infer(self, image: Union[bytes, np.ndarray], conf_threshold: float = None) -> Dict:
        """
        检测（单张图像）

        Args:
            image: JPEG字节或BGR图像
            conf_threshold: 置信度阈值（为空则使用默认值）

        Returns:
            Dict: {'boxes': [[x1, y1, x2, y2, label, conf], ...]}
        """
        threshold = self.conf_threshold if conf_threshold is None else conf_threshold

        try:
            frame = decode_image(image)
            if frame is None:
                logger.warning(f"{self.name}: 图像解码失败")
                return {'boxes': []}

            tensor, info = self.preprocess(frame)
            outputs = self.run(tensor)
            boxes, scores = self.decode_outputs(outputs)

            return {'boxes': self.postprocess(boxes, scores, info, threshold)}

        except Exception as e:
            logger.error(f"{self.name}: 检测异常: {e}", exc_info=True)
            return {'boxes': []}


class RTDETRDetector(OnnxDetector):
    """RT-DETR输出解析：boxes [1,Q,4] + scores [1,Q,C]，或合并输出 [1,Q,4+C]；坐标为归一化cx,cy,w,h"""

    def decode_outputs(self, outputs: Dict[str, np.ndarray]):
        num_classes = len(self.class_names)

        if 'boxes' in outputs and 'scores' in outputs:
            boxes = np.asarray(outputs['boxes'], dtype=np.float32).reshape(-1, 4)
            scores = np.asarray(outputs['scores'], dtype=np.float32).reshape(len(boxes), -1)
        elif len(outputs) == 1:
            combined = np.asarray(next(iter(outputs.values())), dtype=np.float32)
            combined = combined.reshape(-1, 4 + num_classes)
            boxes = combined[:, :4]
            scores = combined[:, 4:]
        else:
            logger.warning(f"{self.name}: 未知的输出格式 {list(outputs.keys())}")
            return np.zeros((0, 4), np.float32), np.zeros((0, num_classes), np.float32)

        # 归一化坐标 → 输入图像像素坐标
        return boxes * self.input_size, scores


class FireSmokeDetector(RTDETRDetector):
    """火灾/烟雾检测（阈值较高，宁可少报）"""
    name = 'FIRE'
    class_names = ('Fire', 'Smoke', 'Other')
    alarm_labels = ('Fire', 'Smoke')
    default_conf_threshold = 0.85


class WeaponDetector(RTDETRDetector):
    """武器检测（刀具、手枪）"""
    name = 'WEAPON'
    class_names = ('Knife', 'Pistol')
    alarm_labels = ('Knife', 'Pistol')
    default_conf_threshold = 0.65


class TheftDetector(OnnxDetector):
    """盗窃动作检测（YOLOv8输出 [1, 4+C, N]，按通道排列，坐标为输入像素）"""
    name = 'THEFT'
    class_names = ('Theft', 'Normal')
    alarm_labels = ('Theft',)
    default_conf_threshold = 0.5

    def decode_outputs(self, outputs: Dict[str, np.ndarray]):
        num_channels = 4 + len(self.class_names)
        data = np.asarray(next(iter(outputs.values())), dtype=np.float32)

        # [1, 6, 8400] → (6, 8400)
        data = data.reshape(num_channels, -1)
        if data.shape[1] != 8400:
            logger.debug(f"{self.name}: 候选框数量 {data.shape[1]}（标准YOLOv8为8400）")

        boxes = data[:4].T
        scores = data[4:].T
        return boxes, scores


class DepthEstimator:
    """单目深度估计（Depth Anything V2，输入518×518）"""

    input_size = 518
    mean = np.array([0.485, 0.456, 0.406], dtype=np.float32)
    std = np.array([0.229, 0.224, 0.225], dtype=np.float32)

    def __init__(self, session):
        """
        Args:
            session: onnxruntime.InferenceSession（或同接口对象）
        """
        self.session = session
        self.input_name = session.get_inputs()[0].name
        logger.info("✓ 深度估计模型初始化完成")

    def estimate_depth(self, image: Union[bytes, np.ndarray]) -> np.ndarray:
        """
        估计深度图（异常向上抛出，由调用方决定策略）

        Args:
            image: JPEG字节或BGR图像

        Returns:
            np.ndarray: (518, 518) float32 深度图
        """
        frame = decode_image(image)
        if frame is None:
            raise ValueError("图像解码失败")

        # 直接拉伸到518×518（不保持长宽比）
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        resized = cv2.resize(rgb, (self.input_size, self.input_size), interpolation=cv2.INTER_LINEAR)

        normalized = (resized.astype(np.float32) / 255.0 - self.mean) / self.std
        tensor = np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

        output = self.session.run(None, {self.input_name: tensor})[0]
        depth = np.squeeze(np.asarray(output, dtype=np.float32))

        if depth.shape != (self.input_size, self.input_size):
            depth = cv2.resize(depth, (self.input_size, self.input_size), interpolation=cv2.INTER_LINEAR)

        return depth
