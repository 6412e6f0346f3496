"""
API客户端 - 后端接口交互

功能：
- 登录认证（密码AES加密）
- 保活机制
- 获取摄像头登记记录
- 获取用户检测配置（采样窗口等）
- 上传报警信息
"""
import requests
import threading
import logging
from typing import Dict, List, Optional
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad


logger = logging.getLogger(__name__)

# AES密钥和IV（固定值，与后端保持一致）
AES_KEY = b'JzjPLY9632AijnEQ'  # 16字节
AES_IV = b'DYgjCEIikmj2W9xN'   # 16字节


def aes_encrypt_password(password: str, key: bytes = AES_KEY, iv: bytes = AES_IV) -> str:
    """
    使用AES CBC模式加密密码（PKCS7填充）

    Args:
        password: 明文密码
        key: AES密钥
        iv: 初始向量

    Returns:
        str: 十六进制编码的加密密文
    """
    try:
        cipher = AES.new(key, AES.MODE_CBC, iv)
        encrypted_data = cipher.encrypt(pad(password.encode('utf-8'), AES.block_size))
        return encrypted_data.hex()

    except Exception as e:
        logger.error(f"密码加密失败: {e}")
        raise


class APIClient:
    """后端API客户端（所有接口失败时返回None/False，不抛异常）"""

    LOGIN_PATH = '/api/auth/login'
    KEEP_ALIVE_PATH = '/api/auth/keepalive'
    CAMERAS_PATH = '/api/cameras'
    USER_SETTINGS_PATH = '/api/user/settings'
    ALARM_PATH = '/api/alerts'

    def __init__(self, base_url: str, username: str, password: str,
                 keep_alive_interval: float = 1200, timeout: float = 10):
        """
        Args:
            base_url: 后端基础URL（如 http://localhost:3000）
            username: 用户名
            password: 密码
            keep_alive_interval: 保活间隔（秒）
            timeout: 请求超时（秒）
        """
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.timeout = timeout
        self.token = None
        self.session = requests.Session()
        self.keep_alive_thread = None
        self.keep_alive_interval = keep_alive_interval  # 默认20分钟保活一次
        self.stop_event = threading.Event()

    def _headers(self) -> Dict[str, str]:
        return {"x-access-token": self.token} if self.token else {}

    def login(self) -> bool:
        """
        登录获取token

        Returns:
            bool: 登录是否成功
        """
        try:
            url = f"{self.base_url}{self.LOGIN_PATH}"

            data = {
                "username": self.username,
                "password": aes_encrypt_password(self.password)
            }

            logger.info(f"正在登录: {url}")
            response = self.session.post(url, json=data, timeout=self.timeout)

            if response.status_code == 200:
                result = response.json()
                token = (result.get('result') or {}).get('token') if isinstance(result, dict) else None
                if token:
                    self.token = token
                    logger.info("✓ 登录成功")
                    return True
                logger.error(f"✗ 登录失败: 响应中未找到token - {result}")
                return False
            else:
                logger.error(f"✗ 登录失败: HTTP {response.status_code}")
                return False

        except Exception as e:
            logger.error(f"✗ 登录异常: {e}")
            return False

    def keep_alive(self) -> bool:
        """保活接口（单次调用）"""
        try:
            url = f"{self.base_url}{self.KEEP_ALIVE_PATH}"
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)

            if response.status_code == 200:
                logger.debug("✓ 保活成功")
                return True
            else:
                logger.warning(f"✗ 保活失败: HTTP {response.status_code}")
                return False

        except Exception as e:
            logger.warning(f"✗ 保活异常: {e}")
            return False

    def start_keep_alive(self):
        """启动保活后台线程"""
        def keep_alive_worker():
            logger.info(f"保活线程启动（间隔: {self.keep_alive_interval}s）")
            while not self.stop_event.wait(self.keep_alive_interval):
                self.keep_alive()

        self.stop_event.clear()
        self.keep_alive_thread = threading.Thread(target=keep_alive_worker, daemon=True)
        self.keep_alive_thread.start()

    def stop_keep_alive(self):
        """停止保活线程"""
        if self.keep_alive_thread:
            self.stop_event.set()
            self.keep_alive_thread.join(timeout=5)
            self.keep_alive_thread = None
            logger.info("保活线程已停止")

    def get_camera_records(self) -> Optional[List[Dict]]:
        """
        获取摄像头登记记录

        Returns:
            List[Dict]: 摄像头记录列表 [{id, userId, name, ip, ..., detectionClass, isActive}, ...]
        """
        try:
            url = f"{self.base_url}{self.CAMERAS_PATH}"
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)

            if response.status_code == 200:
                result = response.json()
                records = result.get('result', []) if isinstance(result, dict) else result
                logger.debug(f"✓ 获取摄像头记录成功: {len(records)} 条")
                return records
            else:
                logger.error(f"✗ 获取摄像头记录失败: HTTP {response.status_code}")
                return None

        except Exception as e:
            logger.error(f"✗ 获取摄像头记录异常: {e}")
            return None

    def get_user_settings(self, user_id: str) -> Optional[Dict]:
        """
        获取用户检测配置

        Args:
            user_id: 用户ID

        Returns:
            Dict: {'samplingRate': 30000, ...}
        """
        try:
            url = f"{self.base_url}{self.USER_SETTINGS_PATH}"
            response = self.session.get(url, headers=self._headers(),
                                        params={"userId": user_id}, timeout=self.timeout)

            if response.status_code == 200:
                result = response.json()
                logger.debug(f"✓ 获取用户配置成功: {user_id}")
                return result
            else:
                logger.error(f"✗ 获取用户配置失败 [{user_id}]: HTTP {response.status_code}")
                return None

        except Exception as e:
            logger.error(f"✗ 获取用户配置异常 [{user_id}]: {e}")
            return None

    def upload_alarm(self, alarm_data: Dict) -> bool:
        """
        上传报警信息

        Args:
            alarm_data: 报警数据

        Returns:
            bool: 上传是否成功
        """
        try:
            url = f"{self.base_url}{self.ALARM_PATH}"
            response = self.session.post(url, headers=self._headers(), json=alarm_data, timeout=self.timeout)

            if response.status_code == 200:
                logger.info(f"✓ 报警上传成功 (摄像头: {alarm_data.get('cameraId')})")
                return True
            else:
                logger.error(f"✗ 报警上传失败: HTTP {response.status_code}")
                return False

        except Exception as e:
            logger.error(f"✗ 报警上传异常: {e}")
            return False
