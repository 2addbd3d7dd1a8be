import json
import logging
from pathlib import Path

import pytest

from tello_relay.config import (
    DeviceSettings,
    MonitorSettings,
    PipelineSettings,
    RecordingSettings,
    RelaySettings,
    load_settings,
)


def test_default_settings():
    settings = load_settings(env={})
    assert settings.device.address == ("192.168.10.1", 8889)
    assert settings.device.video_port == 11111
    assert settings.frame_unit == 3948
    assert settings.pipeline.restart_delay == 1.0
    assert settings.pipeline.stop_when_idle is False
    assert settings.monitor.to_dict() == {
        "battery_interval": 10.0,
        "flight_time_interval": 5.0,
        "speed_interval": 2.0,
    }


def test_media_paths_derive_from_root(tmp_path: Path):
    settings = RelaySettings(media_dir=tmp_path)
    assert settings.photos_dir == tmp_path / "photos"
    assert settings.recordings_dir == tmp_path / "mp4_recordings"
    assert settings.snapshot_path == tmp_path / "photos" / "current_frame.jpg"


def test_missing_file_uses_defaults(tmp_path: Path):
    settings = load_settings(tmp_path / "absent.json", env={})
    assert settings == RelaySettings()


def test_load_settings_from_file(tmp_path: Path):
    config_file = tmp_path / "relay.json"
    config_file.write_text(
        json.dumps(
            {
                "device": {"host": "10.0.0.5", "control_port": 9000},
                "pipeline": {"frame_budget": 1000, "restart_delay": 0.5, "stop_when_idle": True},
                "monitor": {"speed_interval": 1},
                "recording": {"stop_grace": 3},
                "media_dir": str(tmp_path / "media"),
                "event_log_path": str(tmp_path / "events.jsonl"),
            }
        ),
        encoding="utf-8",
    )
    settings = load_settings(config_file, env={})
    assert settings.device.address == ("10.0.0.5", 9000)
    assert settings.frame_unit == 940
    assert settings.pipeline.restart_delay == 0.5
    assert settings.pipeline.stop_when_idle is True
    assert settings.monitor.speed_interval == 1.0
    assert settings.recording.stop_grace == 3.0
    assert settings.media_dir == tmp_path / "media"
    assert settings.event_log_path == tmp_path / "events.jsonl"


def test_non_object_file_rejected(tmp_path: Path):
    config_file = tmp_path / "relay.json"
    config_file.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(config_file, env={})


def test_environment_overrides(tmp_path: Path):
    settings = load_settings(
        env={
            "TELLO_RELAY_DEVICE_HOST": "10.1.1.1",
            "TELLO_RELAY_MEDIA_DIR": str(tmp_path),
            "TELLO_RELAY_FFMPEG": "/opt/ffmpeg/bin/ffmpeg",
            "TELLO_RELAY_STOP_WHEN_IDLE": "yes",
        }
    )
    assert settings.device.host == "10.1.1.1"
    assert settings.media_dir == tmp_path
    assert settings.pipeline.ffmpeg_binary == "/opt/ffmpeg/bin/ffmpeg"
    assert settings.pipeline.stop_when_idle is True


def test_invalid_environment_value_ignored(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="tello_relay.config"):
        settings = load_settings(env={"TELLO_RELAY_STOP_WHEN_IDLE": "sometimes"})
    assert settings.pipeline.stop_when_idle is False
    assert "TELLO_RELAY_STOP_WHEN_IDLE" in caplog.text


@pytest.mark.parametrize(
    "factory",
    [
        lambda: DeviceSettings(host=" "),
        lambda: DeviceSettings(control_port=70000),
        lambda: PipelineSettings(frame_budget=100),
        lambda: PipelineSettings(restart_delay=0),
        lambda: PipelineSettings(frame_rate=0),
        lambda: MonitorSettings(battery_interval=float("nan")),
        lambda: RecordingSettings(max_pending_bytes=0),
    ],
)
def test_invalid_settings_rejected(factory):
    with pytest.raises(ValueError):
        factory()
