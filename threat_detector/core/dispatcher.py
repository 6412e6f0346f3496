"""
报警分发器 - Alert Dispatcher

功能：
- 异步上传确认后的报警（线程池，不阻塞调度器）
- 报警图片绘制检测框后Base64编码
- 失败只记录日志，不重试
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict

import cv2
import numpy as np

from threat_detector.utils.geometry import draw_detections, resize_and_encode_image
from .types import Alert, DetectionClass


logger = logging.getLogger(__name__)


# 报警类型名称
ALARM_TYPE_NAMES = {
    DetectionClass.FIRE: '火灾/烟雾报警',
    DetectionClass.WEAPON: '武器报警',
    DetectionClass.THEFT: '盗窃行为报警',
}


def build_alarm_data(alert: Alert) -> Dict:
    """
    构建报警上传数据

    在报警载荷基础上，把证据图片替换为绘制了检测框的Base64图片（alarmPicCode）
    """
    payload = alert.to_payload()
    evidence = payload.pop('evidenceImageBytes')

    image = cv2.imdecode(np.frombuffer(evidence, dtype=np.uint8), cv2.IMREAD_COLOR) if evidence else None
    if image is not None:
        vis_image = draw_detections(image, [alert.detection.as_list()])
        _, image_base64 = resize_and_encode_image(vis_image)
    else:
        logger.warning(f"[{alert.user_id}_{alert.camera_id}] 证据图片解码失败，不绘制检测框")
        image_base64 = ''

    payload.update({
        'alarmPicCode': image_base64,
        'alarmDate': alert.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
        'alarmType': alert.detection_class.value.upper(),
        'alarmTypeName': ALARM_TYPE_NAMES[alert.detection_class],
        'label': alert.detection.label,
        'box': [round(v, 1) for v in alert.detection.box],
    })
    return payload


class AlertDispatcher:
    """异步报警分发（尽力而为）"""

    def __init__(self, api_client, max_workers: int = 2):
        """
        Args:
            api_client: API客户端（需要 upload_alarm 方法）
            max_workers: 上传线程数
        """
        self.api_client = api_client
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='alert-dispatch')

    def dispatch(self, alert: Alert) -> Future:
        """
        提交报警（立即返回）

        Returns:
            Future: 结果为是否上传成功（不会抛异常）
        """
        logger.info(f"[{alert.user_id}_{alert.camera_id}] 提交报警: {alert.detection_class.value} "
                    f"{alert.detection.label} ({alert.confidence:.2f})")
        return self.executor.submit(self._deliver, alert)

    def _deliver(self, alert: Alert) -> bool:
        camera_key = f"{alert.user_id}_{alert.camera_id}"
        try:
            success = self.api_client.upload_alarm(build_alarm_data(alert))
            if not success:
                logger.warning(f"[{camera_key}] ✗ 报警分发失败（不重试）")
            return bool(success)

        except Exception as e:
            logger.error(f"[{camera_key}] 报警分发异常: {e}", exc_info=True)
            return False

    def shutdown(self, wait: bool = True):
        """关闭线程池"""
        self.executor.shutdown(wait=wait)
        logger.info("报警分发器已关闭")
