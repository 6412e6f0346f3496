"""
几何工具 - Geometry Utilities

功能：
- 检测框IoU计算
- 非极大值抑制（NMS）
- 检测框裁剪到图像范围
- 报警图片绘制与编码
"""
import cv2
import numpy as np
import base64
from typing import List, Sequence, Tuple


def compute_iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """
    计算两个检测框的交并比

    Args:
        box_a: [x1, y1, x2, y2, ...] 检测框（只取前4个值）
        box_b: [x1, y1, x2, y2, ...] 检测框

    Returns:
        float: IoU值，不相交或退化框返回0
    """
    ax1, ay1, ax2, ay2 = box_a[:4]
    bx1, by1, bx2, by2 = box_b[:4]

    ix1 = max(ax1, bx1)
    iy1 = max(ay1, by1)
    ix2 = min(ax2, bx2)
    iy2 = min(ay2, by2)

    inter = max(0.0, ix2 - ix1) * max(0.0, iy2 - iy1)

    area_a = max(0.0, ax2 - ax1) * max(0.0, ay2 - ay1)
    area_b = max(0.0, bx2 - bx1) * max(0.0, by2 - by1)
    union = area_a + area_b - inter

    return inter / union if union > 0 else 0.0


def non_max_suppression(boxes: List[list], iou_threshold: float = 0.5) -> List[list]:
    """
    贪心非极大值抑制

    按置信度降序排列（置信度相同时保持原顺序），依次保留检测框，
    并丢弃与已保留框IoU超过阈值的后续框。

    Args:
        boxes: [[x1, y1, x2, y2, label, conf], ...]
        iou_threshold: 抑制阈值

    Returns:
        List[list]: 保留的检测框（置信度降序）
    """
    if not boxes:
        return []

    # sorted是稳定排序，同分时按原始索引
    ordered = sorted(boxes, key=lambda b: -float(b[5]))

    kept = []
    for box in ordered:
        if all(compute_iou(box, k) <= iou_threshold for k in kept):
            kept.append(box)

    return kept


def clamp_box(box: Sequence[float], width: float, height: float) -> Tuple[float, float, float, float]:
    """
    将检测框裁剪到图像范围内，并保证 x1<=x2, y1<=y2

    Args:
        box: [x1, y1, x2, y2]
        width: 图像宽度
        height: 图像高度

    Returns:
        Tuple: 裁剪后的检测框
    """
    x1, y1, x2, y2 = box[:4]
    x1 = max(0.0, min(float(x1), width))
    y1 = max(0.0, min(float(y1), height))
    x2 = max(0.0, min(float(x2), width))
    y2 = max(0.0, min(float(y2), height))

    if x2 < x1:
        x1, x2 = x2, x1
    if y2 < y1:
        y1, y2 = y2, y1

    return x1, y1, x2, y2


def resize_and_encode_image(image: np.ndarray, width: int = None, height: int = None) -> Tuple[np.ndarray, str]:
    """
    缩放并Base64编码图片

    Args:
        image: numpy array 图像
        width: 目标宽度（为空则不缩放）
        height: 目标高度

    Returns:
        Tuple[np.ndarray, str]: (缩放后图像, base64编码)
    """
    if width and height:
        try:
            resized = cv2.resize(image, (int(width), int(height)), interpolation=cv2.INTER_AREA)
        except Exception:
            resized = image
    else:
        resized = image

    success, buffer = cv2.imencode('.jpg', resized)
    if not success:
        success, buffer = cv2.imencode('.jpg', image)

    img_b64 = base64.b64encode(buffer).decode('utf-8')
    return resized, img_b64


def draw_detections(image: np.ndarray, boxes: List[list], color=(0, 0, 255)) -> np.ndarray:
    """
    在图像上绘制检测框

    Args:
        image: 原始图像
        boxes: [[x1, y1, x2, y2, label, conf], ...]
        color: 绘制颜色

    Returns:
        np.ndarray: 绘制后的图像
    """
    vis_image = image.copy()

    for box in boxes:
        x1, y1, x2, y2 = map(int, box[:4])
        label = f'{box[4]} {float(box[5]):.2f}'

        cv2.rectangle(vis_image, (x1, y1), (x2, y2), color, 2)

        # 标签背景
        (label_w, label_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 1)
        cv2.rectangle(vis_image, (x1, y1 - label_h - 10), (x1 + label_w, y1), color, -1)

        cv2.putText(vis_image, label, (x1, y1 - 5),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 2)

    return vis_image
