"""
API客户端测试：密码加密、登录、报警上传、失败处理
"""
import requests
from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from threat_detector.core.api_client import AES_IV, AES_KEY, APIClient, aes_encrypt_password


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        return self.payload


class FakeHTTPSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self._next('POST', url, **kwargs)

    def get(self, url, **kwargs):
        return self._next('GET', url, **kwargs)


def _client(*responses):
    client = APIClient('http://backend:3000/', 'operator', 'secret')
    client.session = FakeHTTPSession(responses)
    return client


def test_password_encryption_round_trip():
    encrypted = aes_encrypt_password('secret')

    cipher = AES.new(AES_KEY, AES.MODE_CBC, AES_IV)
    plain = unpad(cipher.decrypt(bytes.fromhex(encrypted)), AES.block_size)
    assert plain == b'secret'


def test_login_stores_token():
    client = _client(FakeResponse(200, {'result': {'token': 'abc'}}))

    assert client.login() is True
    assert client.token == 'abc'

    method, url, kwargs = client.session.requests[0]
    assert (method, url) == ('POST', 'http://backend:3000/api/auth/login')
    assert kwargs['json']['username'] == 'operator'
    assert kwargs['json']['password'] == aes_encrypt_password('secret')


def test_login_failures():
    assert _client(FakeResponse(401)).login() is False
    assert _client(FakeResponse(200, {'result': {}})).login() is False
    assert _client(requests.ConnectionError('refused')).login() is False


def test_requests_carry_token():
    client = _client(FakeResponse(200, {'result': {'token': 'abc'}}),
                     FakeResponse(200, {'result': [{'id': 1}]}),
                     FakeResponse(200, {'samplingRate': 10000}))
    client.login()

    assert client.get_camera_records() == [{'id': 1}]
    assert client.get_user_settings('alice') == {'samplingRate': 10000}

    _, _, kwargs = client.session.requests[2]
    assert kwargs['headers'] == {'x-access-token': 'abc'}
    assert kwargs['params'] == {'userId': 'alice'}


def test_camera_records_failure_returns_none():
    assert _client(FakeResponse(500)).get_camera_records() is None
    assert _client(requests.Timeout('slow')).get_camera_records() is None


def test_upload_alarm():
    client = _client(FakeResponse(200, {}), FakeResponse(502), requests.ConnectionError('down'))

    assert client.upload_alarm({'cameraId': 3}) is True
    assert client.upload_alarm({'cameraId': 3}) is False
    assert client.upload_alarm({'cameraId': 3}) is False
    assert client.session.requests[0][1] == 'http://backend:3000/api/alerts'
