"""
配置解析器 - Configuration Parser

功能：
- 解析摄像头登记记录（API返回 / YAML文件）
- 用户运行时检测配置（采样窗口、每轮帧数、各类阈值）
- 采样窗口校验（只允许固定档位）
- 配置比较（支持热更新）
"""
import logging
from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, List, Optional, Tuple

import yaml

from threat_detector.core.types import Camera, DetectionClass


logger = logging.getLogger(__name__)


# 采样窗口档位（毫秒）：10s / 20s / 30s / 1m / 2m / 5m / 10m
SAMPLING_WINDOWS = (10000, 20000, 30000, 60000, 120000, 300000, 600000)
DEFAULT_SAMPLING_WINDOW = 30000

DEFAULT_FRAMES_PER_CHECK = 3
MAX_FRAMES_PER_CHECK = 10


def validate_sampling_window(window_ms) -> int:
    """
    校验采样窗口

    Raises:
        ValueError: 不在允许的档位内
    """
    if isinstance(window_ms, bool) or not isinstance(window_ms, (int, float)) or int(window_ms) != window_ms:
        raise ValueError(f"采样窗口必须是整数毫秒: {window_ms!r}")
    if int(window_ms) not in SAMPLING_WINDOWS:
        raise ValueError(f"无效的采样窗口 {window_ms}ms，可选: {list(SAMPLING_WINDOWS)}")
    return int(window_ms)


@dataclass(frozen=True)
class DetectionSettings:
    """用户运行时检测配置（可按用户覆盖，不需要重启）"""
    sampling_window_ms: int = DEFAULT_SAMPLING_WINDOW
    frames_per_check: int = DEFAULT_FRAMES_PER_CHECK

    # 各类别置信度阈值
    fire_conf_threshold: float = 0.85
    weapon_conf_threshold: float = 0.65
    theft_conf_threshold: float = 0.5

    # 运动校验
    static_iou_threshold: float = 0.8

    # 活体校验
    depth_std_threshold: float = 0.001
    flicker_diff_threshold: float = 15
    flicker_ratio_threshold: float = 0.005

    # API字段名 → 字段名
    ALIASES = {
        'samplingRate': 'sampling_window_ms',
        'samplingWindow': 'sampling_window_ms',
        'framesPerCheck': 'frames_per_check',
        'fireConfThreshold': 'fire_conf_threshold',
        'weaponConfThreshold': 'weapon_conf_threshold',
        'theftConfThreshold': 'theft_conf_threshold',
        'staticIouThreshold': 'static_iou_threshold',
        'depthStdThreshold': 'depth_std_threshold',
        'flickerDiffThreshold': 'flicker_diff_threshold',
        'flickerRatioThreshold': 'flicker_ratio_threshold',
    }

    def __post_init__(self):
        # 冻结实例，规范化类型需要 object.__setattr__
        object.__setattr__(self, 'sampling_window_ms', validate_sampling_window(self.sampling_window_ms))

        frames = self.frames_per_check
        try:
            frames_int = int(frames)
        except (TypeError, ValueError):
            raise ValueError(f"每轮帧数必须是整数: {frames!r}") from None
        if isinstance(frames, bool) or float(frames) != frames_int:
            raise ValueError(f"每轮帧数必须是整数: {frames!r}")
        if not 1 <= frames_int <= MAX_FRAMES_PER_CHECK:
            raise ValueError(f"每轮帧数必须在 1~{MAX_FRAMES_PER_CHECK} 之间: {frames}")
        object.__setattr__(self, 'frames_per_check', frames_int)

        for name in ('fire_conf_threshold', 'weapon_conf_threshold', 'theft_conf_threshold',
                     'static_iou_threshold', 'depth_std_threshold', 'flicker_diff_threshold',
                     'flicker_ratio_threshold'):
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, float(value))
            except (TypeError, ValueError):
                raise ValueError(f"{name} 必须是数值: {value!r}") from None

        for name in ('fire_conf_threshold', 'weapon_conf_threshold', 'theft_conf_threshold',
                     'static_iou_threshold'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} 必须在 0~1 之间: {value}")

        for name in ('depth_std_threshold', 'flicker_diff_threshold', 'flicker_ratio_threshold'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} 不能为负数: {getattr(self, name)}")

    def conf_threshold(self, detection_class: DetectionClass) -> float:
        """获取检测类别对应的置信度阈值"""
        return getattr(self, f"{DetectionClass.parse(detection_class).value}_conf_threshold")

    def merged(self, data: Optional[Dict]) -> 'DetectionSettings':
        """
        以当前配置为基础合并覆盖项（支持API驼峰字段名）

        Raises:
            ValueError: 未知字段或取值非法
        """
        if not data:
            return self

        known = {f.name for f in fields(self)}
        updates = {}
        for key, value in data.items():
            name = self.ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"未知的检测配置项: {key}")
            if value is not None:
                updates[name] = value

        return replace(self, **updates)

    def to_dict(self) -> Dict:
        return asdict(self)


def load_settings(path: str) -> Tuple[DetectionSettings, Dict[str, DetectionSettings]]:
    """
    从YAML文件加载检测配置

    文件格式:
        default:
          sampling_window_ms: 30000
          fire_conf_threshold: 0.85
        users:
          user-1:
            sampling_window_ms: 10000

    Returns:
        (默认配置, {user_id: 用户配置})
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    default = DetectionSettings().merged(data.get('default'))

    per_user = {}
    for user_id, overrides in (data.get('users') or {}).items():
        per_user[str(user_id)] = default.merged(overrides)

    logger.info(f"✓ 加载检测配置: {path} (用户覆盖: {len(per_user)} 个)")
    return default, per_user


class ConfigParser:
    """配置解析器：解析摄像头记录、用户配置，比较配置变化"""

    @staticmethod
    def parse_camera_record(record: Dict) -> Optional[Camera]:
        """
        解析单条摄像头记录

        Args:
            record: {id, userId, name, ip, port, username, password, streamPath,
                     hlsUrl|streamUrl, detectionClass, isActive|active}

        Returns:
            Camera，记录不合法返回None
        """
        try:
            camera_id = int(record['id'])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"摄像头记录缺少有效ID: {record}")
            return None

        try:
            detection_class = DetectionClass.parse(record.get('detectionClass'))
        except ValueError:
            logger.warning(f"摄像头 {camera_id} 检测类别未知: {record.get('detectionClass')}")
            return None

        port = record.get('port')
        active = record.get('isActive', record.get('active', True))

        return Camera(
            id=camera_id,
            user_id=str(record.get('userId', '')),
            name=record.get('name') or f"Camera {camera_id}",
            ip=record.get('ip') or None,
            port=int(port) if port not in (None, '') else None,
            username=record.get('username') or None,
            password=record.get('password') or None,
            stream_path=record.get('streamPath') or '/live',
            stream_url=record.get('hlsUrl') or record.get('streamUrl') or None,
            detection_class=detection_class,
            active=bool(active),
        )

    @staticmethod
    def parse_camera_records(config_data) -> Dict[int, Camera]:
        """
        解析摄像头记录列表（只保留启用的摄像头）

        Args:
            config_data: API返回 {'result': [...]} 或记录列表

        Returns:
            Dict[int, Camera]: {camera_id: Camera}
        """
        cameras = {}

        if isinstance(config_data, dict):
            if 'result' not in config_data:
                logger.warning("配置数据中未找到 'result' 字段")
                return cameras
            records = config_data['result']
        else:
            records = config_data

        if not isinstance(records, list):
            records = [records]

        for record in records:
            camera = ConfigParser.parse_camera_record(record or {})
            if camera is None or not camera.active:
                continue
            if camera.id in cameras:
                logger.warning(f"摄像头ID重复，忽略: {camera.id}")
                continue
            cameras[camera.id] = camera

        logger.info(f"✓ 解析摄像头记录: {len(cameras)} 个启用")
        return cameras

    @staticmethod
    def load_cameras_file(path: str) -> Dict[int, Camera]:
        """从YAML文件加载摄像头记录（顶层 cameras: [...]）"""
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        records = data.get('cameras', []) if isinstance(data, dict) else data
        return ConfigParser.parse_camera_records(records or [])

    @staticmethod
    def parse_user_settings(data: Dict, base: DetectionSettings) -> DetectionSettings:
        """
        解析用户配置（API返回），非法值保留原配置

        Args:
            data: {'samplingRate': 10000, ...} 或 {'result': {...}}
            base: 基础配置
        """
        if not data:
            return base

        payload = data.get('result', data) if isinstance(data, dict) else {}
        known = set(DetectionSettings.ALIASES) | {f.name for f in fields(DetectionSettings)}
        overrides = {k: v for k, v in payload.items() if k in known}

        try:
            return base.merged(overrides)
        except (TypeError, ValueError) as e:
            logger.warning(f"用户配置非法，保留原配置: {e}")
            return base

    @staticmethod
    def compare_configs(old_configs: Dict[int, Camera], new_configs: Dict[int, Camera]) -> Dict[str, List[int]]:
        """
        比较新旧配置，找出需要添加、删除、更新的摄像头

        Args:
            old_configs: 旧配置字典
            new_configs: 新配置字典

        Returns:
            Dict: {'add': [...], 'remove': [...], 'update': [...]}
        """
        old_keys = set(old_configs.keys())
        new_keys = set(new_configs.keys())

        added = sorted(new_keys - old_keys)
        removed = sorted(old_keys - new_keys)

        updated = sorted(
            key for key in old_keys & new_keys
            if not ConfigParser._configs_equal(old_configs[key], new_configs[key])
        )

        return {
            'add': added,
            'remove': removed,
            'update': updated
        }

    @staticmethod
    def _configs_equal(camera1: Camera, camera2: Camera) -> bool:
        """比较两个摄像头配置是否相等"""
        return asdict(camera1) == asdict(camera2)
