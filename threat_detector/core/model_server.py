"""
模型服务 - 进程内共享的模型句柄

功能：
- 每种检测类别一个模型句柄（火灾/武器/盗窃 + 深度估计）
- 首次使用时才加载模型（懒加载），之后所有摄像头共享
- 加载失败会被缓存，后续调用直接抛出，不会每次重试

使用场景：
- 轮询调度器每轮只检测一路摄像头，串行推理，共享一份模型即可
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Generic, List, Optional, TypeVar

from .detector import FireSmokeDetector, WeaponDetector, TheftDetector, DepthEstimator
from .types import DetectionClass

logger = logging.getLogger(__name__)

T = TypeVar('T')

# 默认模型文件名（位于 models_dir 下）
DEFAULT_MODEL_FILES = {
    'fire': 'fire.onnx',
    'weapon': 'weapon.onnx',
    'theft': 'theft.onnx',
    'depth': 'depth_anything_v2_small.onnx',
}


class ModelUnavailableError(RuntimeError):
    """模型不可用（加载失败或文件缺失）"""


class ModelHandle(Generic[T]):
    """懒加载模型句柄（线程安全，缓存加载异常）"""

    def __init__(self, name: str, factory: Callable[[], T]):
        """
        Args:
            name: 模型名称（用于日志）
            factory: 模型构造函数（无参数）
        """
        self.name = name
        self._factory = factory
        self._instance: Optional[T] = None
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._instance is not None

    @property
    def failed(self) -> bool:
        return self._error is not None

    def get(self) -> T:
        """
        获取模型实例（首次调用时加载）

        Returns:
            模型实例

        Raises:
            ModelUnavailableError: 模型加载失败（含之前已缓存的失败）
        """
        with self._lock:
            if self._error is not None:
                raise ModelUnavailableError(f"{self.name} 模型不可用: {self._error}") from self._error

            if self._instance is None:
                logger.info(f"正在加载 {self.name} 模型...")
                try:
                    self._instance = self._factory()
                except Exception as e:
                    self._error = e
                    logger.error(f"✗ {self.name} 模型加载失败: {e}")
                    raise ModelUnavailableError(f"{self.name} 模型不可用: {e}") from e
                logger.info(f"✓ {self.name} 模型加载完成")

            return self._instance


def create_onnx_session(model_path: Path, providers: List[str]):
    """创建ONNX推理会话"""
    import onnxruntime as ort

    if not Path(model_path).exists():
        raise FileNotFoundError(f"模型文件不存在: {model_path}")

    session = ort.InferenceSession(str(model_path), providers=providers)
    logger.info(f"  模型: {model_path}")
    logger.info(f"  输入: {[i.name for i in session.get_inputs()]}")
    logger.info(f"  输出: {[o.name for o in session.get_outputs()]}")
    return session


class ModelServer:
    """模型服务：持有每种检测类别的模型句柄"""

    def __init__(self, models_dir: str, providers: List[str] = None,
                 model_files: dict = None, session_factory: Callable = None):
        """
        Args:
            models_dir: 模型目录
            providers: onnxruntime执行后端（默认 CPUExecutionProvider）
            model_files: 覆盖默认模型文件名 {'fire': ..., 'weapon': ..., 'theft': ..., 'depth': ...}
            session_factory: 会话构造函数 (model_path, providers) -> session（测试时注入）
        """
        self.models_dir = Path(models_dir)
        self.providers = providers or ['CPUExecutionProvider']
        self.model_files = dict(DEFAULT_MODEL_FILES)
        if model_files:
            self.model_files.update(model_files)
        self._session_factory = session_factory or create_onnx_session

        self.fire: ModelHandle[FireSmokeDetector] = ModelHandle(
            '火灾/烟雾', lambda: FireSmokeDetector(self._session('fire')))
        self.weapon: ModelHandle[WeaponDetector] = ModelHandle(
            '武器', lambda: WeaponDetector(self._session('weapon')))
        self.theft: ModelHandle[TheftDetector] = ModelHandle(
            '盗窃动作', lambda: TheftDetector(self._session('theft')))
        self.depth: ModelHandle[DepthEstimator] = ModelHandle(
            '深度估计', lambda: DepthEstimator(self._session('depth')))

        logger.info(f"模型服务已创建（模型目录: {self.models_dir}, 后端: {self.providers}）")

    def _session(self, key: str):
        return self._session_factory(self.models_dir / self.model_files[key], self.providers)

    def handle_for(self, detection_class: DetectionClass) -> ModelHandle:
        """获取检测类别对应的模型句柄"""
        if detection_class == DetectionClass.FIRE:
            return self.fire
        if detection_class == DetectionClass.WEAPON:
            return self.weapon
        if detection_class == DetectionClass.THEFT:
            return self.theft
        raise ValueError(f"未知检测类别: {detection_class}")

    def infer(self, detection_class: DetectionClass, image_bytes: bytes,
              conf_threshold: float = None) -> List[list]:
        """
        推理（模型不可用时返回空结果）

        Args:
            detection_class: 检测类别
            image_bytes: JPEG图像
            conf_threshold: 置信度阈值（为空则使用类别默认值）

        Returns:
            boxes: [[x1, y1, x2, y2, label, conf], ...]
        """
        try:
            detector = self.handle_for(detection_class).get()
        except ModelUnavailableError as e:
            logger.warning(f"[{detection_class.value}] {e}，按无检测处理")
            return []

        result = detector.infer(image_bytes, conf_threshold=conf_threshold)
        return result['boxes']

    def status(self) -> dict:
        """获取模型加载状态"""
        return {
            handle.name: {'loaded': handle.loaded, 'failed': handle.failed}
            for handle in (self.fire, self.weapon, self.theft, self.depth)
        }
