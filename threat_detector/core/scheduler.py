"""
摄像头轮询调度器 - Camera Rotation Scheduler

功能：
- 维护启用的摄像头列表，按登记顺序轮询（每轮只检测一路）
- 根据采样窗口和摄像头数量动态计算检测间隔
- 单轮流程：抓取多帧 → 推理 → 运动校验 → 活体校验 → 报警
- 每轮结束后根据当前列表长度重新计算下一轮延迟
- 登记/移除可与正在进行的检测并发（加锁，检测使用快照）
- 状态查询、周期性性能日志

状态机：
    IDLE ──enroll/start──▶ RUNNING ──列表为空──▶ IDLE
    RUNNING ──stop──▶ STOPPED ──start──▶ RUNNING
"""
import logging
import os
import threading
import time
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import psutil

from threat_detector.utils.config_parser import (
    DetectionSettings, validate_sampling_window, DEFAULT_SAMPLING_WINDOW
)
from threat_detector.verifiers.base import top_detection
from threat_detector.verifiers.liveness import LivenessVerifier
from threat_detector.verifiers.motion import MotionVerifier
from .frame_source import CameraConfigError, FrameCaptureError, build_camera_url
from .types import Alert, Camera, CameraRuntimeState, Detection, DetectionClass, FrameBurst

logger = logging.getLogger(__name__)


MIN_CAMERA_INTERVAL = 1000  # ms
MIN_FRAME_INTERVAL = 500    # ms


def camera_interval_ms(window_ms: int, queue_length: int) -> int:
    """
    每路摄像头的检测间隔：采样窗口平均分给所有摄像头

    queue_length为0时返回窗口本身
    """
    if queue_length <= 0:
        return window_ms
    return max(MIN_CAMERA_INTERVAL, window_ms // queue_length)


def frame_interval_ms(camera_ms: int, frames_per_check: int) -> int:
    """单轮内的帧间隔：检测间隔平均分给每轮帧数"""
    return max(MIN_FRAME_INTERVAL, camera_ms // max(1, frames_per_check))


class SchedulerState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    STOPPED = 'stopped'


class TurnOutcome(str, Enum):
    """单轮检测结果"""
    NO_DETECTION = 'no_detection'
    STATIC = 'static'
    SUPPRESSED = 'suppressed'
    ALERT = 'alert'
    ERROR = 'error'


class SystemClock:
    """时钟（测试时替换为假时钟）"""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """等待延迟，event被设置时提前返回"""
        return event.wait(seconds)


class CameraRotationScheduler:
    """摄像头轮询调度器（单工作线程，同一时间只运行一轮检测）"""

    def __init__(self, frame_source, model_server, dispatcher=None,
                 motion_verifier: MotionVerifier = None,
                 liveness_verifier: LivenessVerifier = None,
                 default_settings: DetectionSettings = None,
                 clock: SystemClock = None,
                 perf_log_every: int = 20,
                 run_in_background: bool = True):
        """
        Args:
            frame_source: 帧源（capture(camera) -> Frame）
            model_server: 模型服务（infer / depth 句柄）
            dispatcher: 报警分发器（dispatch(alert)），为空则只记录日志
            motion_verifier: 运动校验器
            liveness_verifier: 活体校验器（默认使用模型服务的深度模型句柄）
            default_settings: 默认检测配置
            clock: 时钟
            perf_log_every: 每多少轮打印一次性能统计
            run_in_background: 是否启动工作线程（为False时由调用方驱动 run_turn）
        """
        self.frame_source = frame_source
        self.model_server = model_server
        self.dispatcher = dispatcher
        self.motion_verifier = motion_verifier or MotionVerifier()
        self.liveness_verifier = liveness_verifier or LivenessVerifier(model_server.depth)
        self.default_settings = default_settings or DetectionSettings()
        self.clock = clock or SystemClock()
        self.perf_log_every = perf_log_every
        self.run_in_background = run_in_background

        # 共享状态（由 _lock 保护）
        self._lock = threading.RLock()
        self._cameras: List[Camera] = []
        self._states: Dict[int, CameraRuntimeState] = {}
        self._cursor = 0
        self._state = SchedulerState.IDLE
        self._settings: Dict[str, DetectionSettings] = {}
        self._broadcast: Optional[Callable] = None

        # 工作线程
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()

        # 性能统计
        self.perf_stats = {
            'turn_times': [],   # 单轮耗时（ms）
            'turns': 0,
            'alerts': 0,
            'outcomes': {outcome.value: 0 for outcome in TurnOutcome},
        }

        logger.info("调度器初始化完成")

    # ==================== 运行控制 ====================

    @property
    def state(self) -> SchedulerState:
        return self._state

    def start(self, cameras: Iterable[Camera] = ()):
        """批量登记初始摄像头并启动轮询"""
        with self._lock:
            if self._state == SchedulerState.STOPPED:
                self._state = SchedulerState.IDLE

        enrolled = 0
        for camera in cameras:
            try:
                if self.enroll(camera):
                    enrolled += 1
            except CameraConfigError:
                continue

        with self._lock:
            if self._cameras:
                self._ensure_running()

            logger.info(f"调度器启动: 登记 {enrolled} 路摄像头，共 {len(self._cameras)} 路，"
                        f"状态: {self._state.value}")

    def stop(self, wait: bool = False, timeout: float = None):
        """
        停止轮询（不中断正在进行的检测，本轮结束后不再调度）

        Args:
            wait: 是否等待工作线程退出
            timeout: 等待超时（秒）
        """
        with self._lock:
            self._state = SchedulerState.STOPPED
            thread = self._thread
        self._wake.set()

        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

        logger.info("调度器已停止")

    def shutdown(self, timeout: float = 30):
        """停止并清空所有摄像头和用户配置"""
        self.stop(wait=True, timeout=timeout)
        with self._lock:
            self._cameras.clear()
            self._states.clear()
            self._settings.clear()
            self._cursor = 0
        logger.info("调度器已重置")

    def _ensure_running(self):
        """启动工作线程（调用方持有锁）"""
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.RUNNING
        if not self.run_in_background:
            return
        if self._thread is None or not self._thread.is_alive():
            self._wake.clear()
            self._thread = threading.Thread(target=self._run_loop, name='camera-rotation', daemon=True)
            self._thread.start()
            logger.info("轮询线程已启动")

    def _run_loop(self):
        """工作线程主循环：运行一轮 → 等待下一轮延迟"""
        while True:
            with self._lock:
                if self._state != SchedulerState.RUNNING or not self._cameras:
                    if self._state == SchedulerState.RUNNING:
                        self._state = SchedulerState.IDLE
                        logger.info("摄像头列表为空，轮询暂停")
                    if self._thread is threading.current_thread():
                        self._thread = None
                    return

            delay_ms = self.run_turn()
            self.clock.wait(self._wake, delay_ms / 1000.0)
            self._wake.clear()

    # ==================== 摄像头管理 ====================

    def enroll(self, camera: Camera) -> bool:
        """
        登记摄像头（加入轮询列表末尾）

        Returns:
            bool: 是否新加入（已存在或未启用返回False）

        Raises:
            CameraConfigError: 没有可用的拉流地址
        """
        try:
            build_camera_url(camera)
        except CameraConfigError as e:
            logger.error(f"[{camera.camera_key}] ✗ 登记失败: {e}")
            raise

        if not camera.active:
            logger.info(f"[{camera.camera_key}] 摄像头未启用，跳过登记")
            return False

        with self._lock:
            if camera.id in self._states:
                logger.info(f"[{camera.camera_key}] 摄像头已在轮询列表中")
                return False

            self._cameras.append(replace(camera))
            self._states[camera.id] = CameraRuntimeState()

            window = self._window_for(camera.user_id)
            logger.info(f"[{camera.camera_key}] ✓ 登记摄像头 {camera.name} ({camera.detection_class.value})，"
                        f"共 {len(self._cameras)} 路，检测间隔 "
                        f"{camera_interval_ms(window, len(self._cameras))}ms")

            self._ensure_running()
        return True

    def dequeue(self, camera_id: int) -> bool:
        """
        移除摄像头（正在检测的这一轮不受影响）

        Returns:
            bool: 是否移除
        """
        with self._lock:
            index = self._index_of(camera_id)
            if index is None:
                return False

            camera = self._cameras.pop(index)
            del self._states[camera_id]

            # 保持游标指向同一个后续摄像头
            if index < self._cursor:
                self._cursor -= 1
            if self._cameras:
                self._cursor %= len(self._cameras)
            else:
                self._cursor = 0
                if self._state == SchedulerState.RUNNING:
                    self._state = SchedulerState.IDLE
                self._wake.set()

            logger.info(f"[{camera.camera_key}] 移除摄像头，剩余 {len(self._cameras)} 路")
        return True

    def update_camera(self, camera_id: int, **updates) -> bool:
        """
        更新摄像头登记副本（下一轮生效）

        Args:
            camera_id: 摄像头ID
            **updates: Camera字段，如 detection_class='weapon'、active=False

        Returns:
            bool: 是否更新
        """
        if 'detection_class' in updates:
            updates['detection_class'] = DetectionClass.parse(updates['detection_class'])
        updates.pop('id', None)

        with self._lock:
            index = self._index_of(camera_id)
            if index is None:
                return False

            old = self._cameras[index]
            new = replace(old, **updates)

            if not new.active:
                logger.info(f"[{old.camera_key}] 摄像头已停用")
                return self.dequeue(camera_id)

            try:
                build_camera_url(new)
            except CameraConfigError as e:
                logger.error(f"[{old.camera_key}] ✗ 更新被拒绝: {e}")
                raise

            self._cameras[index] = new

            if new.detection_class != old.detection_class:
                self._states[camera_id] = CameraRuntimeState(last_checked=self._states[camera_id].last_checked)
                logger.info(f"[{new.camera_key}] 检测类别变更: "
                            f"{old.detection_class.value} → {new.detection_class.value}")
            else:
                logger.info(f"[{new.camera_key}] 摄像头配置已更新")
        return True

    def _index_of(self, camera_id: int) -> Optional[int]:
        for i, camera in enumerate(self._cameras):
            if camera.id == camera_id:
                return i
        return None

    # ==================== 用户配置 ====================

    def set_sampling_window(self, user_id: str, window_ms: int):
        """
        设置用户采样窗口（下一轮生效）

        Raises:
            ValueError: 窗口不在允许的档位内（原值不变）
        """
        window_ms = validate_sampling_window(window_ms)

        with self._lock:
            current = self._settings.get(user_id, self.default_settings)
            old = current.sampling_window_ms
            self._settings[user_id] = replace(current, sampling_window_ms=window_ms)
            count = sum(1 for c in self._cameras if c.user_id == user_id)
            total = len(self._cameras)

        if old != window_ms:
            logger.info(f"用户 {user_id} 采样窗口: {old}ms → {window_ms}ms "
                        f"({count} 路摄像头，检测间隔 {camera_interval_ms(window_ms, total)}ms)")

    def set_detection_settings(self, user_id: str, settings):
        """
        设置用户检测配置（DetectionSettings 或覆盖项字典）

        Raises:
            ValueError: 配置非法（原配置不变）
        """
        with self._lock:
            current = self._settings.get(user_id, self.default_settings)
            if not isinstance(settings, DetectionSettings):
                settings = current.merged(settings)

            self._settings[user_id] = settings

        logger.info(f"用户 {user_id} 检测配置已更新: {settings.to_dict()}")

    def set_broadcast_function(self, fn: Optional[Callable]):
        """设置每轮结束后的状态推送回调 fn(user_id, camera_id, camera_name, is_alarmed)"""
        self._broadcast = fn

    def settings_for(self, user_id: str) -> DetectionSettings:
        with self._lock:
            return self._settings.get(user_id, self.default_settings)

    def _window_for(self, user_id: str) -> int:
        settings = self._settings.get(user_id, self.default_settings)
        return settings.sampling_window_ms or DEFAULT_SAMPLING_WINDOW

    # ==================== 单轮检测 ====================

    def run_turn(self) -> int:
        """
        运行一轮检测（当前游标对应的摄像头）

        Returns:
            int: 下一轮延迟（ms），列表为空返回0
        """
        with self._lock:
            if not self._cameras:
                return 0

            self._cursor %= len(self._cameras)
            camera = replace(self._cameras[self._cursor])
            settings = self._settings.get(camera.user_id, self.default_settings)
            camera_ms = camera_interval_ms(self._window_for(camera.user_id), len(self._cameras))

        frame_ms = frame_interval_ms(camera_ms, settings.frames_per_check)
        turn_start = self.clock.monotonic()

        logger.debug(f"[{camera.camera_key}] 开始检测 ({camera.detection_class.value}, "
                     f"{settings.frames_per_check} 帧，帧间隔 {frame_ms}ms)")

        try:
            outcome = self._check_camera(camera, settings, frame_ms)
        except Exception as e:
            logger.error(f"[{camera.camera_key}] 检测异常: {e}", exc_info=True)
            outcome = TurnOutcome.ERROR

        next_delay = self._finish_turn(camera, outcome)

        is_alarmed = outcome == TurnOutcome.ALERT
        self._notify(camera, is_alarmed)
        self._record_perf((self.clock.monotonic() - turn_start) * 1000, outcome)

        return next_delay

    def _check_camera(self, camera: Camera, settings: DetectionSettings, frame_ms: int) -> TurnOutcome:
        """抓帧 → 推理 → 运动校验 → 活体校验 → 报警"""
        key = camera.camera_key
        frames_per_check = settings.frames_per_check
        conf_threshold = settings.conf_threshold(camera.detection_class)

        # 1. 抓帧 + 推理
        frames = []
        burst: FrameBurst = []
        for i in range(frames_per_check):
            if i > 0:
                self.clock.sleep(frame_ms / 1000.0)

            try:
                frame = self.frame_source.capture(camera)
            except FrameCaptureError as e:
                logger.warning(f"[{key}] 第 {i + 1}/{frames_per_check} 帧抓取失败: {e}")
                continue

            frames.append(frame)
            boxes = self.model_server.infer(camera.detection_class, frame.image_bytes,
                                            conf_threshold=conf_threshold)
            if boxes:
                burst.append((frame, [Detection.from_list(b) for b in boxes]))

        if not burst:
            logger.debug(f"[{key}] 未检测到目标 (有效帧 {len(frames)}/{frames_per_check})")
            return TurnOutcome.NO_DETECTION

        logger.info(f"[{key}] 检测到目标: {len(burst)}/{len(frames)} 帧触发")

        # 2. 运动校验
        motion = self.motion_verifier.analyze(burst, settings)
        if motion.is_static:
            logger.info(f"[{key}] 检测框静止 (平均IoU={motion.metric:.3f})，判定为静态误报")
            return TurnOutcome.STATIC

        # 3. 活体校验（最后一个触发帧的最高置信度框）
        last_frame, last_detections = burst[-1]
        detection = top_detection(last_detections)
        liveness = self.liveness_verifier.verify(camera.detection_class, frames, last_frame,
                                                 detection.box, settings)
        if not liveness.is_live:
            logger.info(f"[{key}] 活体校验未通过 ({liveness.method}: {liveness.reason}, "
                        f"{liveness.metric:.5f})，报警已抑制")
            return TurnOutcome.SUPPRESSED

        # 4. 报警
        alert = Alert(
            camera_id=camera.id,
            user_id=camera.user_id,
            camera_name=camera.name,
            detection_class=camera.detection_class,
            detection=detection,
            evidence_image=last_frame.image_bytes,
            motion=motion,
            liveness=liveness,
            timestamp=self.clock.now(),
        )
        logger.warning(f"[{key}] 🚨 确认报警: {detection.label} ({detection.confidence:.2f})，"
                       f"平均IoU={motion.metric:.3f}，{liveness.method}={liveness.metric:.5f}")

        if self.dispatcher is not None:
            try:
                self.dispatcher.dispatch(alert)
            except Exception as e:
                logger.error(f"[{key}] 报警提交失败（报警判定不变）: {e}", exc_info=True)

        return TurnOutcome.ALERT

    def _finish_turn(self, camera: Camera, outcome: TurnOutcome) -> int:
        """更新运行时状态、推进游标、计算下一轮延迟"""
        with self._lock:
            state = self._states.get(camera.id)
            if state is not None:
                state.last_checked = self.clock.now()
                state.is_alarmed = outcome == TurnOutcome.ALERT
                if outcome == TurnOutcome.STATIC:
                    state.consecutive_static += 1
                elif outcome in (TurnOutcome.ALERT, TurnOutcome.NO_DETECTION):
                    state.consecutive_static = 0

            if not self._cameras:
                self._cursor = 0
                return 0

            # 本轮摄像头仍在列表中则从它之后继续，否则游标已指向后续摄像头
            index = self._index_of(camera.id)
            if index is not None:
                self._cursor = (index + 1) % len(self._cameras)
            else:
                self._cursor %= len(self._cameras)

            next_camera = self._cameras[self._cursor]
            return camera_interval_ms(self._window_for(next_camera.user_id), len(self._cameras))

    def _notify(self, camera: Camera, is_alarmed: bool):
        broadcast = self._broadcast
        if broadcast is None:
            return
        try:
            broadcast(camera.user_id, camera.id, camera.name, is_alarmed)
        except Exception as e:
            logger.error(f"[{camera.camera_key}] 状态推送异常: {e}", exc_info=True)

    def _record_perf(self, turn_ms: float, outcome: TurnOutcome):
        stats = self.perf_stats
        stats['turn_times'].append(turn_ms)
        stats['turns'] += 1
        stats['outcomes'][outcome.value] += 1
        if outcome == TurnOutcome.ALERT:
            stats['alerts'] += 1

        # 保持最近100轮的统计
        if len(stats['turn_times']) > 100:
            stats['turn_times'].pop(0)

        if self.perf_log_every and stats['turns'] % self.perf_log_every == 0:
            avg_turn = sum(stats['turn_times']) / len(stats['turn_times'])
            mem_mb = psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
            logger.info(f"轮次: {stats['turns']} | 平均耗时: {avg_turn:.1f}ms | "
                        f"报警: {stats['alerts']} | 结果分布: {stats['outcomes']} | "
                        f"内存: {mem_mb:.1f}MB | 摄像头: {len(self._cameras)} 路")

    # ==================== 状态查询 ====================

    def status(self) -> Dict:
        """
        获取调度器状态

        Returns:
            Dict: {running, state, queue_size, cursor,
                   per_camera: {id: {is_alarmed, last_checked, consecutive_static, detection_class}}}
        """
        with self._lock:
            per_camera = {}
            for camera in self._cameras:
                state = self._states[camera.id]
                per_camera[camera.id] = {
                    'name': camera.name,
                    'user_id': camera.user_id,
                    'is_alarmed': state.is_alarmed,
                    'last_checked': state.last_checked.isoformat() if state.last_checked else None,
                    'consecutive_static': state.consecutive_static,
                    'detection_class': camera.detection_class.value,
                }

            return {
                'running': self._state == SchedulerState.RUNNING,
                'state': self._state.value,
                'queue_size': len(self._cameras),
                'cursor': self._cursor,
                'per_camera': per_camera,
            }
