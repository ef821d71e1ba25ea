"""
Configuration for the media job worker

Settings are pydantic models loaded from a YAML file and overridden by
environment variables of the form ``MEDIA_WORKER__SECTION__KEY=value``.
"""

import os
import socket
from pathlib import Path
from typing import Optional, Dict, Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import ConfigurationError


ENV_PREFIX = "MEDIA_WORKER__"


class ConfigSection(BaseModel):
    # YAML numbers are accepted for string fields
    model_config = ConfigDict(coerce_numbers_to_str=True)


class BrokerConfig(ConfigSection):
    redis_url: str = "redis://localhost:6379/0"
    queue: str = "convert"
    key_prefix: str = "media-worker"
    consumer_id: str = Field(default_factory=socket.gethostname)
    prefetch: int = Field(default=1, ge=1)
    nack_delay: float = Field(default=5.0, ge=0)
    max_deliveries: int = Field(default=10, ge=0)
    dead_letter_invalid: bool = False
    shutdown_grace: float = Field(default=10.0, ge=0)
    poll_timeout: float = Field(default=1.0, gt=0)
    promote_interval: float = Field(default=0.5, gt=0)


class DatabaseConfig(ConfigSection):
    url: Optional[str] = None
    pool_min_size: int = 1
    pool_max_size: int = 5
    command_timeout: float = 30.0


class CheckpointConfig(ConfigSection):
    backend: str = Field(default="postgres", pattern="^(postgres|file|memory)$")
    directory: str = "checkpoints"
    clear_on_success: bool = False


class TelemetryConfig(ConfigSection):
    backend: str = Field(default="redis", pattern="^(redis|log)$")
    redis_url: str = "redis://localhost:6379/1"
    channel_prefix: str = "media"


class StorageConfig(ConfigSection):
    endpoint: str = "localhost:9000"
    access_key: str = ""
    secret_key: str = ""
    secure: bool = False
    download_path: str = "downloading"
    chunk_size: int = 1024 * 1024


class VideoSettings(ConfigSection):
    codec: str = "x265"
    profile: Optional[str] = None
    preset: Optional[str] = "medium"
    tune: Optional[str] = None
    quality: Optional[str] = "22"


class AudioSettings(ConfigSection):
    codec: str = "opus"
    bitrate: Optional[str] = "128"
    fallback: Optional[str] = "av_aac"
    mixdown: Optional[str] = "5point1"


class TranscodeConfig(ConfigSection):
    handbrake_binary: str = "HandBrakeCLI"
    ffprobe_binary: str = "ffprobe"
    transcoding_path: str = "transcoding"
    skip_compatible: bool = False
    # codec names as ffprobe reports them, used by skip_compatible
    probe_video_codec: str = "hevc"
    probe_audio_codec: str = "opus"
    video: VideoSettings = Field(default_factory=VideoSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)


class CatalogConfig(ConfigSection):
    media_host: str = "http://localhost:8080"
    timeout: float = 60.0
    content_type: str = "video/x-matroska"


class StageConfig(ConfigSection):
    resumable: bool = True
    watch_interval: Optional[float] = Field(default=None, gt=0)
    unit_timeout: Optional[float] = Field(default=None, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


def _default_stages() -> Dict[str, StageConfig]:
    return {
        "fetch": StageConfig(resumable=True, watch_interval=10.0),
        "transform": StageConfig(resumable=True, watch_interval=10.0),
        "publish": StageConfig(resumable=False, max_attempts=3),
    }


class HealthConfig(ConfigSection):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3401


class LoggingConfig(ConfigSection):
    level: str = "INFO"
    structured: bool = True
    log_file: Optional[str] = None


class WorkerConfig(ConfigSection):
    """Top-level worker configuration."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    stages: Dict[str, StageConfig] = Field(default_factory=_default_stages)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("stages", mode="before")
    @classmethod
    def _merge_stage_defaults(cls, value):
        """Lay configured stage keys over the built-in defaults of that stage."""
        if not isinstance(value, dict):
            return value
        merged: Dict[str, Any] = {name: stage.model_dump() for name, stage in _default_stages().items()}
        for name, overrides in value.items():
            if isinstance(overrides, dict) and name in merged:
                merged[name] = {**merged[name], **overrides}
            else:
                merged[name] = overrides
        return merged

    def stage(self, name: str) -> StageConfig:
        """Configuration of one stage, falling back to the defaults."""
        if name in self.stages:
            return self.stages[name]
        return _default_stages().get(name, StageConfig())


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Merge ``MEDIA_WORKER__SECTION__KEY`` variables into a config mapping.

    Values stay strings; pydantic converts them to each field's type.

    Args:
        data: Parsed configuration mapping (modified in place)
        environ: Environment mapping

    Returns:
        The updated mapping
    """
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue

        node = data
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = raw
    return data


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> WorkerConfig:
    """
    Load worker configuration.

    Args:
        path: Optional YAML configuration file
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        Validated WorkerConfig

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(str(config_path), f"cannot read file: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(str(config_path), f"invalid YAML: {e}")

        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(str(config_path), "top level must be a mapping")
        data = loaded or {}

    apply_env_overrides(data, os.environ if environ is None else environ)

    try:
        return WorkerConfig.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ConfigurationError(key, first.get("msg", "invalid value"))
