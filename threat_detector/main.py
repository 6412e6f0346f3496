"""
威胁检测调度框架 - 主程序

功能：
- 登录后端、保活
- 加载检测配置、摄像头记录（后端接口或YAML文件）
- 启动轮询调度器
- 配置轮询和热更新（登记/移除/更新摄像头、用户采样窗口）
"""
import argparse
import time
import logging
from pathlib import Path
from datetime import datetime
from dataclasses import asdict
from typing import Dict, Optional

import yaml

from threat_detector.core.api_client import APIClient
from threat_detector.core.dispatcher import AlertDispatcher
from threat_detector.core.frame_source import CameraConfigError, FrameSource
from threat_detector.core.model_server import ModelServer
from threat_detector.core.scheduler import CameraRotationScheduler
from threat_detector.core.types import Camera
from threat_detector.utils.config_parser import ConfigParser, DetectionSettings, load_settings


# ============ 配置日志 ============
def setup_logging(log_dir: Path, level: str = 'INFO'):
    """配置日志"""
    log_dir.mkdir(exist_ok=True, parents=True)

    # 日志文件路径（按日期分割）
    log_file = log_dir / f"threat_detector_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            # 控制台输出
            logging.StreamHandler(),
            # 文件输出
            logging.FileHandler(log_file, encoding='utf-8')
        ]
    )

    return logging.getLogger(__name__)


logger = logging.getLogger(__name__)


# ============ 摄像头管理器 ============
class CameraManager:
    """把配置变化同步到调度器（登记/移除/更新、用户配置）"""

    def __init__(self, scheduler: CameraRotationScheduler,
                 default_settings: DetectionSettings,
                 user_settings: Dict[str, DetectionSettings] = None,
                 api_client: Optional[APIClient] = None):
        """
        Args:
            scheduler: 调度器
            default_settings: 默认检测配置
            user_settings: 本地配置文件中的用户覆盖
            api_client: API客户端（为空则不拉取用户配置）
        """
        self.scheduler = scheduler
        self.default_settings = default_settings
        self.user_settings = dict(user_settings or {})
        self.api_client = api_client
        self.current_configs: Dict[int, Camera] = {}

        # 本地用户配置先生效
        for user_id, settings in self.user_settings.items():
            self.scheduler.set_detection_settings(user_id, settings)

    def apply_cameras(self, new_configs: Dict[int, Camera]) -> Dict:
        """
        比对配置变化并同步到调度器

        Returns:
            Dict: {'add': [...], 'remove': [...], 'update': [...]}
        """
        changes = ConfigParser.compare_configs(self.current_configs, new_configs)

        # 处理删除的摄像头
        if changes['remove']:
            logger.info(f"删除摄像头: {len(changes['remove'])}")
            for camera_id in changes['remove']:
                self.scheduler.dequeue(camera_id)

        # 处理新增的摄像头
        if changes['add']:
            logger.info(f"新增摄像头: {len(changes['add'])}")
            for camera_id in changes['add']:
                self._enroll(new_configs[camera_id])

        # 处理更新的摄像头
        if changes['update']:
            logger.info(f"更新摄像头: {len(changes['update'])}")
            for camera_id in changes['update']:
                camera = new_configs[camera_id]
                updates = {k: v for k, v in asdict(camera).items() if k != 'id'}
                updates['detection_class'] = camera.detection_class
                try:
                    if not self.scheduler.update_camera(camera_id, **updates):
                        # 之前登记失败的摄像头，重新尝试登记
                        self._enroll(camera)
                except CameraConfigError:
                    continue

        if not any(changes.values()):
            logger.debug("摄像头配置无变化")

        self.current_configs = new_configs
        return changes

    def _enroll(self, camera: Camera) -> bool:
        try:
            return self.scheduler.enroll(camera)
        except CameraConfigError:
            return False

    def refresh_user_settings(self):
        """拉取摄像头所属用户的检测配置（采样窗口等）"""
        if self.api_client is None:
            return

        user_ids = sorted({camera.user_id for camera in self.current_configs.values()})
        for user_id in user_ids:
            data = self.api_client.get_user_settings(user_id)
            if not data:
                continue

            base = self.user_settings.get(user_id, self.default_settings)
            settings = ConfigParser.parse_user_settings(data, base)
            if settings != self.scheduler.settings_for(user_id):
                self.scheduler.set_detection_settings(user_id, settings)


def fetch_camera_configs(api_client: Optional[APIClient], cameras_file: Optional[str]) -> Optional[Dict[int, Camera]]:
    """获取摄像头配置（后端接口优先，失败返回None）"""
    if api_client is not None:
        records = api_client.get_camera_records()
        if records is None:
            return None
        return ConfigParser.parse_camera_records(records)

    try:
        return ConfigParser.load_cameras_file(cameras_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"✗ 读取摄像头文件失败: {e}")
        return None


def main():
    """主程序"""
    parser = argparse.ArgumentParser(description='威胁检测调度框架 - Threat Detection Scheduler')

    # API配置
    parser.add_argument('--api-url', type=str, default=None,
                        help='后端API基础URL（如 http://localhost:3000），为空则使用 --cameras-file')
    parser.add_argument('--username', type=str, default='',
                        help='登录用户名')
    parser.add_argument('--password', type=str, default='',
                        help='登录密码')
    parser.add_argument('--cameras-file', type=str, default=None,
                        help='摄像头配置YAML文件（不连接后端时使用）')

    # 模型配置
    parser.add_argument('--models-dir', type=str, default='models',
                        help='ONNX模型目录')
    parser.add_argument('--providers', type=str, nargs='+', default=['CPUExecutionProvider'],
                        help='onnxruntime执行后端（例如: CUDAExecutionProvider CPUExecutionProvider）')

    # 检测配置
    parser.add_argument('--settings', type=str, default=None,
                        help='检测配置YAML文件（采样窗口、阈值、用户覆盖）')
    parser.add_argument('--ffmpeg', type=str, default='ffmpeg',
                        help='ffmpeg可执行文件路径')
    parser.add_argument('--capture-timeout', type=float, default=10.0,
                        help='单次抓帧超时（秒）')
    parser.add_argument('--dispatch-workers', type=int, default=2,
                        help='报警上传线程数')

    # 配置更新
    parser.add_argument('--config-update-interval', type=int, default=30,
                        help='配置更新间隔（秒）')

    # 日志
    parser.add_argument('--log-dir', type=str, default=None,
                        help='日志目录（默认: threat_detector/log）')
    parser.add_argument('--log-level', type=str, default='INFO',
                        help='日志级别')

    args = parser.parse_args()

    if not args.api_url and not args.cameras_file:
        parser.error('必须指定 --api-url 或 --cameras-file')

    # 配置日志
    log_dir = Path(args.log_dir) if args.log_dir else Path(__file__).parent / 'log'
    setup_logging(log_dir, args.log_level)

    logger.info("=" * 60)
    logger.info("威胁检测调度框架 - Threat Detection Scheduler")
    logger.info("=" * 60)

    # 1. 登录
    api_client = None
    if args.api_url:
        logger.info("[1/5] 登录后端系统...")
        api_client = APIClient(args.api_url, args.username, args.password)

        if not api_client.login():
            logger.error("登录失败，程序退出")
            return

        api_client.start_keep_alive()
    else:
        logger.info(f"[1/5] 未配置后端，使用摄像头文件: {args.cameras_file}")

    # 2. 检测配置
    logger.info("[2/5] 加载检测配置...")
    if args.settings:
        default_settings, user_settings = load_settings(args.settings)
    else:
        default_settings, user_settings = DetectionSettings(), {}
    logger.info(f"默认检测配置: {default_settings.to_dict()}")

    # 3. 组件
    logger.info("[3/5] 初始化模型服务和调度器...")
    model_server = ModelServer(args.models_dir, providers=args.providers)
    frame_source = FrameSource(args.ffmpeg, timeout=args.capture_timeout)
    dispatcher = AlertDispatcher(api_client, max_workers=args.dispatch_workers) if api_client else None
    if dispatcher is None:
        logger.warning("未配置后端，报警只记录日志")

    scheduler = CameraRotationScheduler(frame_source, model_server, dispatcher=dispatcher,
                                        default_settings=default_settings)
    manager = CameraManager(scheduler, default_settings, user_settings, api_client)

    # 4. 初始摄像头
    logger.info("[4/5] 获取摄像头配置...")
    configs = fetch_camera_configs(api_client, args.cameras_file)
    if configs is None:
        logger.error("获取摄像头配置失败，程序退出")
        if api_client:
            api_client.stop_keep_alive()
        return

    manager.apply_cameras(configs)
    manager.refresh_user_settings()
    scheduler.start()
    logger.info(f"✓ 调度器状态: {scheduler.status()}")

    # 5. 配置更新循环
    logger.info(f"[5/5] 启动配置更新循环（间隔: {args.config_update_interval}s）...")
    logger.info("按 Ctrl+C 退出")

    try:
        while True:
            time.sleep(args.config_update_interval)

            logger.debug("检查配置更新...")
            new_configs = fetch_camera_configs(api_client, args.cameras_file)
            if new_configs is None:
                logger.warning("获取配置失败，跳过本次更新")
                continue

            manager.apply_cameras(new_configs)
            manager.refresh_user_settings()

            status = scheduler.status()
            logger.info(f"当前状态: {status['state']} | 摄像头: {status['queue_size']} 路 | "
                        f"模型: {model_server.status()}")

    except KeyboardInterrupt:
        logger.info("用户中断，正在退出...")

    except Exception as e:
        logger.error(f"主循环异常: {e}", exc_info=True)

    finally:
        scheduler.shutdown()
        if dispatcher:
            dispatcher.shutdown(wait=True)
        if api_client:
            api_client.stop_keep_alive()
        logger.info("程序已退出")


if __name__ == '__main__':
    main()
