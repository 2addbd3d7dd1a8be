"""Configuration management for the Tello relay."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_HOST = "192.168.10.1"
DEFAULT_CONTROL_PORT = 8889
DEFAULT_VIDEO_PORT = 11111

MPEGTS_PACKET_SIZE = 188
DEFAULT_FRAME_BUDGET = 4096

DEFAULT_MEDIA_DIR = Path("uploads")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _positive_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{name} must be a positive finite value")
    return number


def _port(value: Any, name: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not (1 <= port <= 65535):
        raise ValueError(f"{name} must be between 1 and 65535")
    return port


@dataclass(frozen=True, slots=True)
class DeviceSettings:
    """Network location of the remote device."""

    host: str = DEFAULT_DEVICE_HOST
    control_port: int = DEFAULT_CONTROL_PORT
    video_port: int = DEFAULT_VIDEO_PORT
    emergency_on_shutdown: bool = True

    def __post_init__(self) -> None:
        host = str(self.host).strip()
        if not host:
            raise ValueError("Device host must be provided")
        object.__setattr__(self, "host", host)
        object.__setattr__(self, "control_port", _port(self.control_port, "Control port"))
        object.__setattr__(self, "video_port", _port(self.video_port, "Video port"))

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.control_port)

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "control_port": self.control_port,
            "video_port": self.video_port,
            "emergency_on_shutdown": self.emergency_on_shutdown,
        }


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Transcoder subprocess parameters."""

    ffmpeg_binary: str = "ffmpeg"
    bitrate: str = "800k"
    frame_rate: int = 30
    snapshot_fps: int = 2
    fifo_size: int = 50_000_000
    packet_size: int = MPEGTS_PACKET_SIZE
    frame_budget: int = DEFAULT_FRAME_BUDGET
    restart_delay: float = 1.0
    stop_timeout: float = 2.0
    stop_when_idle: bool = False

    def __post_init__(self) -> None:
        if not str(self.ffmpeg_binary).strip():
            raise ValueError("FFmpeg binary must be provided")
        if self.frame_rate < 1 or self.frame_rate > 120:
            raise ValueError("Frame rate must be between 1 and 120")
        if self.snapshot_fps < 1:
            raise ValueError("Snapshot fps must be positive")
        if self.fifo_size <= 0:
            raise ValueError("FIFO size must be positive")
        if self.packet_size <= 0:
            raise ValueError("Packet size must be positive")
        if self.frame_budget < self.packet_size:
            raise ValueError("Frame budget must hold at least one packet")
        object.__setattr__(
            self, "restart_delay", _positive_float(self.restart_delay, "Restart delay")
        )
        object.__setattr__(
            self, "stop_timeout", _positive_float(self.stop_timeout, "Stop timeout")
        )

    @property
    def frame_unit(self) -> int:
        return (self.frame_budget // self.packet_size) * self.packet_size


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    """Polling cadences, in seconds, for the device metrics."""

    battery_interval: float = 10.0
    flight_time_interval: float = 5.0
    speed_interval: float = 2.0

    def __post_init__(self) -> None:
        for name in ("battery_interval", "flight_time_interval", "speed_interval"):
            label = name.replace("_", " ").capitalize()
            object.__setattr__(self, name, _positive_float(getattr(self, name), label))

    def to_dict(self) -> dict[str, float]:
        return {
            "battery_interval": self.battery_interval,
            "flight_time_interval": self.flight_time_interval,
            "speed_interval": self.speed_interval,
        }


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    stop_grace: float = 1.0
    max_pending_bytes: int = 4 * 1024 * 1024

    def __post_init__(self) -> None:
        object.__setattr__(self, "stop_grace", _positive_float(self.stop_grace, "Stop grace"))
        if self.max_pending_bytes <= 0:
            raise ValueError("Maximum pending bytes must be positive")


@dataclass(frozen=True, slots=True)
class RelaySettings:
    """Aggregate settings handed to :class:`~tello_relay.relay.RelayService`."""

    device: DeviceSettings = field(default_factory=DeviceSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    recording: RecordingSettings = field(default_factory=RecordingSettings)
    media_dir: Path = DEFAULT_MEDIA_DIR
    event_log_path: Path | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "media_dir", Path(self.media_dir))
        if self.event_log_path is not None:
            object.__setattr__(self, "event_log_path", Path(self.event_log_path))

    @property
    def frame_unit(self) -> int:
        return self.pipeline.frame_unit

    @property
    def photos_dir(self) -> Path:
        return self.media_dir / "photos"

    @property
    def recordings_dir(self) -> Path:
        return self.media_dir / "mp4_recordings"

    @property
    def snapshot_path(self) -> Path:
        return self.photos_dir / "current_frame.jpg"


def _section(payload: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = payload.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{name.capitalize()} settings must be provided as a mapping")
    return value


def _parse_device(value: Mapping[str, Any]) -> DeviceSettings:
    default = DeviceSettings()
    return DeviceSettings(
        host=value.get("host", default.host),
        control_port=value.get("control_port", default.control_port),
        video_port=value.get("video_port", default.video_port),
        emergency_on_shutdown=bool(
            value.get("emergency_on_shutdown", default.emergency_on_shutdown)
        ),
    )


def _parse_pipeline(value: Mapping[str, Any]) -> PipelineSettings:
    default = PipelineSettings()
    try:
        return PipelineSettings(
            ffmpeg_binary=str(value.get("ffmpeg_binary", default.ffmpeg_binary)),
            bitrate=str(value.get("bitrate", default.bitrate)),
            frame_rate=int(value.get("frame_rate", default.frame_rate)),
            snapshot_fps=int(value.get("snapshot_fps", default.snapshot_fps)),
            fifo_size=int(value.get("fifo_size", default.fifo_size)),
            packet_size=int(value.get("packet_size", default.packet_size)),
            frame_budget=int(value.get("frame_budget", default.frame_budget)),
            restart_delay=value.get("restart_delay", default.restart_delay),
            stop_timeout=value.get("stop_timeout", default.stop_timeout),
            stop_when_idle=bool(value.get("stop_when_idle", default.stop_when_idle)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid pipeline settings: {exc}") from exc


def _parse_monitor(value: Mapping[str, Any]) -> MonitorSettings:
    default = MonitorSettings()
    return MonitorSettings(
        battery_interval=value.get("battery_interval", default.battery_interval),
        flight_time_interval=value.get("flight_time_interval", default.flight_time_interval),
        speed_interval=value.get("speed_interval", default.speed_interval),
    )


def _parse_recording(value: Mapping[str, Any]) -> RecordingSettings:
    default = RecordingSettings()
    try:
        max_pending = int(value.get("max_pending_bytes", default.max_pending_bytes))
    except (TypeError, ValueError) as exc:
        raise ValueError("Maximum pending bytes must be an integer") from exc
    return RecordingSettings(
        stop_grace=value.get("stop_grace", default.stop_grace),
        max_pending_bytes=max_pending,
    )


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def _apply_env_overrides(settings: RelaySettings, env: Mapping[str, str]) -> RelaySettings:
    host = env.get("TELLO_RELAY_DEVICE_HOST")
    if host:
        try:
            settings = replace(settings, device=replace(settings.device, host=host))
        except ValueError as exc:
            logger.warning("Invalid TELLO_RELAY_DEVICE_HOST value %r; ignoring: %s", host, exc)
    media_dir = env.get("TELLO_RELAY_MEDIA_DIR")
    if media_dir:
        settings = replace(settings, media_dir=Path(media_dir))
    binary = env.get("TELLO_RELAY_FFMPEG")
    if binary:
        settings = replace(settings, pipeline=replace(settings.pipeline, ffmpeg_binary=binary))
    idle = env.get("TELLO_RELAY_STOP_WHEN_IDLE")
    if idle:
        try:
            flag = _parse_bool(idle)
        except ValueError:
            logger.warning("Invalid TELLO_RELAY_STOP_WHEN_IDLE value %r; ignoring", idle)
        else:
            settings = replace(
                settings, pipeline=replace(settings.pipeline, stop_when_idle=flag)
            )
    return settings


def load_settings(
    path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> RelaySettings:
    """Load relay settings from an optional JSON file plus environment overrides."""

    settings = RelaySettings()
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            payload = json.loads(config_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            event_log = payload.get("event_log_path")
            settings = RelaySettings(
                device=_parse_device(_section(payload, "device")),
                pipeline=_parse_pipeline(_section(payload, "pipeline")),
                monitor=_parse_monitor(_section(payload, "monitor")),
                recording=_parse_recording(_section(payload, "recording")),
                media_dir=Path(payload.get("media_dir", DEFAULT_MEDIA_DIR)),
                event_log_path=Path(event_log) if event_log else None,
            )
    return _apply_env_overrides(settings, os.environ if env is None else env)


__all__ = [
    "DEFAULT_CONTROL_PORT",
    "DEFAULT_DEVICE_HOST",
    "DEFAULT_FRAME_BUDGET",
    "DEFAULT_VIDEO_PORT",
    "MPEGTS_PACKET_SIZE",
    "DeviceSettings",
    "MonitorSettings",
    "PipelineSettings",
    "RecordingSettings",
    "RelaySettings",
    "load_settings",
]
