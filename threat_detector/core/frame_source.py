"""
帧源 - Frame Source

功能：
- 根据摄像头配置构建拉流地址（优先 IP+账号 → RTSP，其次预生成的流地址）
- 调用 ffmpeg 子进程抓取单帧 JPEG
- 超时、进程失败、ffmpeg缺失统一抛出 FrameCaptureError
"""
import logging
import subprocess
from datetime import datetime
from typing import List
from urllib.parse import quote

from .types import Camera, Frame

logger = logging.getLogger(__name__)


class CameraConfigError(ValueError):
    """摄像头配置错误（没有可用的拉流地址）"""


class FrameCaptureError(RuntimeError):
    """抓帧失败（ffmpeg失败/超时/未安装）"""


def build_camera_url(camera: Camera) -> str:
    """
    构建拉流地址

    Args:
        camera: 摄像头配置

    Returns:
        str: rtsp://user:pass@ip:port/path 或预生成的流地址

    Raises:
        CameraConfigError: 既没有IP也没有流地址
    """
    if camera.ip:
        auth = ''
        if camera.username:
            auth = quote(camera.username, safe='')
            if camera.password:
                auth += ':' + quote(camera.password, safe='')
            auth += '@'

        port = f":{camera.port}" if camera.port else ''
        path = camera.stream_path or '/live'
        if not path.startswith('/'):
            path = '/' + path

        return f"rtsp://{auth}{camera.ip}{port}{path}"

    if camera.stream_url:
        return camera.stream_url

    raise CameraConfigError(f"摄像头 {camera.id} 缺少IP地址和流地址")


def mask_url(url: str) -> str:
    """日志用：隐藏地址中的密码"""
    if '://' not in url or '@' not in url:
        return url
    scheme, rest = url.split('://', 1)
    creds, host = rest.rsplit('@', 1)
    user = creds.split(':', 1)[0]
    return f"{scheme}://{user}:***@{host}"


class FrameSource:
    """ffmpeg单帧抓取"""

    def __init__(self, ffmpeg_path: str = 'ffmpeg', timeout: float = 10.0):
        """
        Args:
            ffmpeg_path: ffmpeg可执行文件
            timeout: 单次抓帧超时（秒）
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def build_args(self, url: str) -> List[str]:
        """构建ffmpeg参数（RTSP走TCP，限制探测时长）"""
        args = [self.ffmpeg_path, '-y']

        if url.startswith('rtsp://'):
            args += [
                '-rtsp_transport', 'tcp',
                '-timeout', '5000000',
                '-analyzeduration', '1000000',
                '-probesize', '1000000',
            ]

        args += ['-i', url, '-frames:v', '1', '-q:v', '2', '-f', 'image2', '-']
        return args

    def capture(self, camera: Camera) -> Frame:
        """
        抓取一帧

        Args:
            camera: 摄像头配置

        Returns:
            Frame: JPEG帧

        Raises:
            CameraConfigError: 无法构建拉流地址
            FrameCaptureError: 抓帧失败
        """
        url = build_camera_url(camera)

        try:
            result = subprocess.run(
                self.build_args(url),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise FrameCaptureError(f"ffmpeg超时 ({self.timeout}s): {mask_url(url)}") from e
        except OSError as e:
            raise FrameCaptureError(f"无法启动ffmpeg ({self.ffmpeg_path}): {e}") from e

        if result.returncode != 0 or not result.stdout:
            tail = ' '.join(result.stderr.decode('utf-8', errors='replace').strip().splitlines()[-3:])
            raise FrameCaptureError(f"ffmpeg退出码 {result.returncode}: {tail}")

        logger.debug(f"[{camera.camera_key}] 抓帧成功 {len(result.stdout)} bytes")
        return Frame(camera_id=camera.id, image_bytes=result.stdout, timestamp=datetime.now())
