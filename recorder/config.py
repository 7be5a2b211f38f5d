"""Configuration management system for Activity Recorder.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. Each capture loop owns one explicit section which it
snapshots and validates once per ``start()`` call.

Configuration Sections:
- screenshots: Screenshot loop cadence, image format and dedup history
- audio: Microphone session and speech/silence segmentation thresholds
- app_monitor: Active-window polling cadence and minimum session length
- web_history: Browser polling cadence and title/favicon enrichment
- ai: AI provider endpoints and post-processing switches
- storage: Data directory, retention and shutdown flush timeout
- privacy: Excluded websites and applications
- web: JSON API server binding

Example:
    >>> from recorder.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.screenshots.interval_ms)
    10000
    >>> config_mgr.update('screenshots', 'interval_ms', 30000)
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
import yaml

logger = logging.getLogger(__name__)

DEFAULT_SCREENSHOT_INTERVAL_MS = 10000
DEFAULT_WEB_HISTORY_INTERVAL_MS = 5000
DEFAULT_APP_MONITOR_INTERVAL_MS = 1000


@dataclass
class ScreenshotConfig:
    """Screenshot loop configuration.

    Attributes:
        enabled: Start the loop with the daemon (default: True)
        interval_ms: Time between captures (default: 10000)
        format: Image format - webp, png, jpeg (default: webp)
        quality: Compression quality 1-100 for lossy formats (default: 80)
        dedup_history: Number of recent thumbnail hashes checked for duplicates (default: 10)
        monitor: mss monitor index, 0 = all monitors combined (default: 1)
        describe_with_ai: Queue an AI description for each new screenshot (default: True)
    """
    enabled: bool = True
    interval_ms: int = DEFAULT_SCREENSHOT_INTERVAL_MS
    format: str = "webp"
    quality: int = 80
    dedup_history: int = 10
    monitor: int = 1
    describe_with_ai: bool = True


@dataclass
class AudioConfig:
    """Microphone recording and segmentation configuration.

    Attributes:
        enabled: Start recording with the daemon (default: True)
        sample_rate: Sample rate in Hz (default: 44100)
        channels: Number of input channels (default: 1)
        chunk_ms: Length of each analysed block (default: 100)
        device: Preferred input device name substring (default: system default)
        silence_detection: Compute silence markers and speech segments (default: True)
        silence_threshold: RMS level below which a block counts as silence (default: 0.05)
        max_silence_ms: Silence longer than this is recorded as a marker (default: 3000)
        min_speech_ms: Speech shorter than this is not a distinct segment (default: 500)
        max_speech_ms: Longer speech runs are split at this length (default: 30000)
        transcribe_with_ai: Queue a transcription when a recording closes (default: True)
    """
    enabled: bool = True
    sample_rate: int = 44100
    channels: int = 1
    chunk_ms: int = 100
    device: Optional[str] = None
    silence_detection: bool = True
    silence_threshold: float = 0.05
    max_silence_ms: int = 3000
    min_speech_ms: int = 500
    max_speech_ms: int = 30000
    transcribe_with_ai: bool = True


@dataclass
class AppMonitorConfig:
    """Active-window tracking configuration.

    Attributes:
        enabled: Start the loop with the daemon (default: True)
        interval_ms: Poll interval (default: 1000)
        min_duration_ms: Focus sessions shorter than this are discarded (default: 500)
    """
    enabled: bool = True
    interval_ms: int = DEFAULT_APP_MONITOR_INTERVAL_MS
    min_duration_ms: int = 500


@dataclass
class WebHistoryConfig:
    """Browser history tracking configuration.

    Attributes:
        enabled: Start the loop with the daemon (default: True)
        interval_ms: Poll interval (default: 5000)
        browsers: Browsers whose history databases are read
        enrich_titles: Fetch page title/favicon when the browser has none (default: True)
        enrichment_timeout_seconds: Network timeout for enrichment, capped at half
            the poll interval (default: 3.0)
    """
    enabled: bool = True
    interval_ms: int = DEFAULT_WEB_HISTORY_INTERVAL_MS
    browsers: list[str] = field(default_factory=lambda: [
        "chrome",
        "chromium",
        "brave",
        "edge",
        "firefox",
    ])
    enrich_titles: bool = True
    enrichment_timeout_seconds: float = 3.0


@dataclass
class AIConfig:
    """AI post-processing configuration.

    Attributes:
        enabled: Run description/transcription jobs and allow insights (default: True)
        ollama_host: Ollama API host URL (default: http://localhost:11434)
        vision_model: Model used to describe screenshots (default: llava)
        text_model: Model used for activity summaries (default: llama3.2)
        transcription_url: OpenAI-compatible /v1/audio/transcriptions endpoint (default: unset)
        transcription_model: Model name sent to the transcription endpoint (default: whisper-1)
        timeout_seconds: Timeout for each AI call (default: 8.0)
        queue_size: Maximum pending post-processing jobs (default: 100)
    """
    enabled: bool = True
    ollama_host: str = "http://localhost:11434"
    vision_model: str = "llava"
    text_model: str = "llama3.2"
    transcription_url: str = ""
    transcription_model: str = "whisper-1"
    timeout_seconds: float = 8.0
    queue_size: int = 100


@dataclass
class StorageConfig:
    """Data storage and retention configuration.

    Attributes:
        data_dir: Directory for screenshots, audio and the database (default: ~/activity-recorder-data)
        retention_days: Delete data older than this (0 = unlimited, default: 30)
        flush_timeout_seconds: Max time a loop may spend flushing on stop (default: 5.0)
    """
    data_dir: str = "~/activity-recorder-data"
    retention_days: int = 30
    flush_timeout_seconds: float = 5.0

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()


@dataclass
class PrivacyConfig:
    """Privacy controls and exclusion rules.

    Attributes:
        excluded_websites: Domains never persisted (exact or subdomain match)
        excluded_apps: App names whose focus sessions are never persisted
    """
    excluded_websites: list[str] = field(default_factory=list)
    excluded_apps: list[str] = field(default_factory=lambda: [
        "1password",
        "keepass",
        "bitwarden",
        "gnome-keyring"
    ])


@dataclass
class WebConfig:
    """JSON API server configuration.

    Attributes:
        enabled: Serve the API from the daemon (default: False)
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number (default: 55555)
    """
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 55555


@dataclass
class Config:
    """Top-level configuration container."""
    screenshots: ScreenshotConfig = field(default_factory=ScreenshotConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    app_monitor: AppMonitorConfig = field(default_factory=AppMonitorConfig)
    web_history: WebHistoryConfig = field(default_factory=WebHistoryConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    web: WebConfig = field(default_factory=WebConfig)


_SECTIONS = {
    'screenshots': ScreenshotConfig,
    'audio': AudioConfig,
    'app_monitor': AppMonitorConfig,
    'web_history': WebHistoryConfig,
    'ai': AIConfig,
    'storage': StorageConfig,
    'privacy': PrivacyConfig,
    'web': WebConfig,
}


def positive_int(value, default: int) -> int:
    """Return ``value`` as a positive int, or ``default`` when it is not one.

    Booleans and non-integral floats are rejected.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, float):
        if not value.is_integer():
            return default
        value = int(value)
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return default
    if isinstance(value, int) and value > 0:
        return value
    return default


def clamp(value, low: float, high: float, default: float) -> float:
    """Coerce ``value`` to a float within ``[low, high]``, else ``default``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(max(number, low), high)


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Handles YAML configuration file I/O with automatic creation of default
    configuration and merging of user settings with defaults.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.config.audio.silence_threshold = 0.02
        >>> config_mgr.save()
    """

    DEFAULT_PATH = Path("~/.config/activity-recorder/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values. Invalid YAML
            returns the default Config.
        """
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.path}")
                return self._dict_to_config(data)
            except (yaml.YAMLError, OSError, TypeError) as e:
                logger.warning(f"Failed to load config from {self.path}: {e}")
                logger.info("Using default configuration")
                return Config()
        else:
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, merging with defaults.

        Missing keys use dataclass defaults; unknown keys are dropped.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Top-level config must be a mapping, got {type(data).__name__}")

        sections = {}
        for name, section_type in _SECTIONS.items():
            section_data = data.get(name) or {}
            if not isinstance(section_data, dict):
                logger.warning(f"Ignoring malformed config section: {name}")
                section_data = {}
            known_fields = {f.name for f in dataclasses.fields(section_type)}
            unknown = set(section_data.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields in {name}: {unknown}")
            sections[name] = section_type(
                **{k: v for k, v in section_data.items() if k in known_fields}
            )
        return Config(**sections)

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Returns:
            True if value was changed and saved, False if unchanged or invalid

        Example:
            >>> config_mgr.update('app_monitor', 'interval_ms', 2000)
            True
            >>> config_mgr.update('invalid_section', 'key', 'value')
            False
        """
        section_obj = getattr(self.config, section, None)
        if section not in _SECTIONS or section_obj is None:
            logger.warning(f"Invalid config section: {section}")
            return False

        if key not in {f.name for f in dataclasses.fields(section_obj)}:
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        old_value = getattr(section_obj, key)
        if old_value != value:
            setattr(section_obj, key, value)
            self.save()
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
            return True

        logger.debug(f"No change for {section}.{key} (already {value})")
        return False

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return asdict(self.config)

    def reload(self) -> None:
        """Reload configuration from file."""
        self.config = self._load()
        logger.info("Configuration reloaded")


_default_config_manager: Optional[ConfigManager] = None


def get_config_manager(path: Optional[Path] = None) -> ConfigManager:
    """Get or create the default ConfigManager instance.

    Args:
        path: Optional custom config path (only used on first call)
    """
    global _default_config_manager
    if _default_config_manager is None:
        _default_config_manager = ConfigManager(path)
    return _default_config_manager
