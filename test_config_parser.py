"""
配置解析测试：采样窗口校验、检测配置、摄像头记录、配置比较
"""
import pytest

from threat_detector.core.types import DetectionClass
from threat_detector.utils.config_parser import (
    SAMPLING_WINDOWS, ConfigParser, DetectionSettings, load_settings, validate_sampling_window
)


def test_sampling_windows_are_enumerated():
    assert SAMPLING_WINDOWS == (10000, 20000, 30000, 60000, 120000, 300000, 600000)
    for window in SAMPLING_WINDOWS:
        assert validate_sampling_window(window) == window


@pytest.mark.parametrize('value', [0, 15000, -30000, 30000.5, '30000', None, True])
def test_invalid_sampling_window(value):
    with pytest.raises(ValueError):
        validate_sampling_window(value)


def test_detection_settings_defaults():
    settings = DetectionSettings()

    assert settings.sampling_window_ms == 30000
    assert settings.frames_per_check == 3
    assert settings.conf_threshold(DetectionClass.FIRE) == 0.85
    assert settings.conf_threshold('weapon') == 0.65
    assert settings.conf_threshold(DetectionClass.THEFT) == 0.5


def test_detection_settings_merge_aliases():
    merged = DetectionSettings().merged({'samplingRate': 60000, 'static_iou_threshold': 0.7})

    assert merged.sampling_window_ms == 60000
    assert merged.static_iou_threshold == 0.7
    assert merged.frames_per_check == 3


def test_detection_settings_rejects_bad_values():
    with pytest.raises(ValueError):
        DetectionSettings(sampling_window_ms=12345)
    with pytest.raises(ValueError):
        DetectionSettings(fire_conf_threshold=1.5)
    with pytest.raises(ValueError):
        DetectionSettings().merged({'unknownKey': 1})


def test_detection_settings_normalizes_yaml_types():
    settings = DetectionSettings(sampling_window_ms=30000.0, frames_per_check='3', fire_conf_threshold='0.9')

    assert settings.sampling_window_ms == 30000 and type(settings.sampling_window_ms) is int
    assert settings.frames_per_check == 3 and type(settings.frames_per_check) is int
    assert settings.fire_conf_threshold == 0.9

    merged = settings.merged({'framesPerCheck': 5.0})
    assert type(merged.frames_per_check) is int


@pytest.mark.parametrize('frames', [0, 11, 2.5, 'three', None, True])
def test_detection_settings_rejects_bad_frames(frames):
    with pytest.raises(ValueError):
        DetectionSettings(frames_per_check=frames)


def test_load_settings_with_user_overrides(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text(
        "default:\n"
        "  sampling_window_ms: 60000\n"
        "  weapon_conf_threshold: 0.7\n"
        "users:\n"
        "  alice:\n"
        "    sampling_window_ms: 10000\n",
        encoding='utf-8',
    )

    default, per_user = load_settings(str(path))

    assert default.sampling_window_ms == 60000
    assert per_user['alice'].sampling_window_ms == 10000
    assert per_user['alice'].weapon_conf_threshold == 0.7


def test_parse_camera_record():
    camera = ConfigParser.parse_camera_record({
        'id': '12', 'userId': 'alice', 'name': 'Gate', 'ip': '10.0.0.12', 'port': '554',
        'username': 'admin', 'password': 'pw', 'streamPath': '/h264', 'detectionClass': 'WEAPON',
        'isActive': True,
    })

    assert camera.id == 12
    assert camera.port == 554
    assert camera.detection_class == DetectionClass.WEAPON
    assert camera.stream_path == '/h264'


def test_parse_camera_record_defaults_and_legacy_class():
    camera = ConfigParser.parse_camera_record({'id': 3, 'userId': 'bob', 'hlsUrl': 'http://relay/3.m3u8',
                                               'detectionClass': 'LOCAL'})

    assert camera.detection_class == DetectionClass.FIRE
    assert camera.stream_url == 'http://relay/3.m3u8'
    assert camera.stream_path == '/live'
    assert camera.name == 'Camera 3'


def test_parse_camera_records_filters_invalid_and_inactive():
    cameras = ConfigParser.parse_camera_records({'result': [
        {'id': 1, 'userId': 'a', 'ip': '10.0.0.1'},
        {'id': 2, 'userId': 'a', 'ip': '10.0.0.2', 'isActive': False},
        {'userId': 'a', 'ip': '10.0.0.3'},
        {'id': 4, 'userId': 'a', 'ip': '10.0.0.4', 'detectionClass': 'laser'},
        {'id': 1, 'userId': 'a', 'ip': '10.0.0.9'},
    ]})

    assert list(cameras) == [1]
    assert cameras[1].ip == '10.0.0.1'


def test_load_cameras_file(tmp_path):
    path = tmp_path / 'cameras.yaml'
    path.write_text(
        "cameras:\n"
        "  - id: 1\n"
        "    userId: alice\n"
        "    ip: 10.0.0.1\n"
        "    detectionClass: theft\n",
        encoding='utf-8',
    )

    cameras = ConfigParser.load_cameras_file(str(path))
    assert cameras[1].detection_class == DetectionClass.THEFT


def test_parse_user_settings_keeps_base_on_invalid():
    base = DetectionSettings()

    assert ConfigParser.parse_user_settings({'samplingRate': 120000}, base).sampling_window_ms == 120000
    assert ConfigParser.parse_user_settings({'result': {'samplingRate': 10000}}, base).sampling_window_ms == 10000
    assert ConfigParser.parse_user_settings({'samplingRate': 12345}, base) is base
    assert ConfigParser.parse_user_settings({'email': 'x@y.z'}, base) == base


def test_compare_configs():
    old = ConfigParser.parse_camera_records([
        {'id': 1, 'userId': 'a', 'ip': '10.0.0.1'},
        {'id': 2, 'userId': 'a', 'ip': '10.0.0.2'},
        {'id': 3, 'userId': 'a', 'ip': '10.0.0.3'},
    ])
    new = ConfigParser.parse_camera_records([
        {'id': 1, 'userId': 'a', 'ip': '10.0.0.1'},
        {'id': 2, 'userId': 'a', 'ip': '10.0.0.2', 'detectionClass': 'weapon'},
        {'id': 4, 'userId': 'a', 'ip': '10.0.0.4'},
    ])

    assert ConfigParser.compare_configs(old, new) == {'add': [4], 'remove': [3], 'update': [2]}
    assert ConfigParser.compare_configs(new, new) == {'add': [], 'remove': [], 'update': []}
