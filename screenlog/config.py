"""Configuration management for screenlog.

This module provides a hierarchical configuration system using YAML files and
frozen Python dataclasses. A ``Config`` value is an immutable snapshot: the
capture scheduler reads one per tick and settings changes always produce a
new value instead of mutating the running one.

Key Features:
- YAML-based configuration files
- Dataclass-based type safety with defaults for every field
- Normalization of sparse or loosely typed input (settings forms, old files)
- Named profiles stored as one YAML file each
- Backward compatibility with missing fields

Configuration Sections:
- model: provider selection and per-provider connection parameters
- capture: cadence, image quality, change detection and alert tuning
- storage: data location, retention and query context limits

Example:
    >>> from screenlog.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.capture.interval_ms)
    1000
    >>> config_mgr.update('capture', 'interval_ms', 2000)
    True
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

PROVIDERS = ("api", "ollama")
API_TYPES = ("openai", "claude", "custom")

# a frame sharing no bit with the baseline always counts as changed
MIN_CHANGE_THRESHOLD = 0.01


class ConfigError(Exception):
    """Raised when a configuration file exists but cannot be used."""


class ProfileError(Exception):
    """Raised for invalid profile names or missing profiles."""


@dataclass(frozen=True)
class ApiConfig:
    """Cloud API connection settings.

    Attributes:
        type: Request shape - openai, claude or custom (default: openai)
        endpoint: Base URL of the API (default: https://api.openai.com/v1)
        api_key: Secret key sent with each request (default: empty)
        model: Vision-capable model name (default: gpt-4o-mini)
    """
    type: str = "openai"
    endpoint: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"


@dataclass(frozen=True)
class OllamaConfig:
    """Local Ollama server settings.

    Attributes:
        endpoint: Ollama HTTP API URL (default: http://localhost:11434)
        model: Vision model pulled into Ollama (default: llava)
    """
    endpoint: str = "http://localhost:11434"
    model: str = "llava"


@dataclass(frozen=True)
class ModelConfig:
    """Model backend selection.

    Attributes:
        provider: Which backend to use - api or ollama (default: api)
        api: Cloud API settings
        ollama: Local Ollama settings
        timeout_seconds: Per-request timeout (default: 60)
        max_attempts: Attempts for transient failures, including the first (default: 3)
        log_exchanges: Write a diagnostic log entry per model call (default: False)
    """
    provider: str = "api"
    api: ApiConfig = field(default_factory=ApiConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    timeout_seconds: int = 60
    max_attempts: int = 3
    log_exchanges: bool = False


@dataclass(frozen=True)
class CaptureConfig:
    """Screen capture and analysis settings.

    Attributes:
        enabled: Start capturing when the service starts (default: True)
        interval_ms: Time between capture ticks (default: 1000)
        compress_quality: JPEG quality 1-100 for model upload and saved files (default: 80)
        skip_unchanged: Skip analysis of perceptually unchanged frames (default: True)
        change_threshold: Similarity at or above which a frame counts as unchanged (default: 0.95)
        recent_summary_limit: Recent records passed to the model as context (default: 8)
        recent_detail_limit: How many of those include their detail text (default: 3)
        alert_confidence_threshold: Minimum confidence before an issue alert fires (default: 0.6)
        alert_cooldown_seconds: Minimum gap between two alerts with the same key (default: 60)
        save_screenshots: Keep a JPEG of every analyzed frame (default: True)
    """
    enabled: bool = True
    interval_ms: int = 1000
    compress_quality: int = 80
    skip_unchanged: bool = True
    change_threshold: float = 0.95
    recent_summary_limit: int = 8
    recent_detail_limit: int = 3
    alert_confidence_threshold: float = 0.6
    alert_cooldown_seconds: int = 60
    save_screenshots: bool = True


@dataclass(frozen=True)
class StorageConfig:
    """Data storage and retention settings.

    Attributes:
        data_dir: Directory for summaries, screenshots and logs (default: ~/screenlog-data)
        retention_days: Delete day partitions older than this (default: 7)
        max_screenshots: Cap on raw summary records kept across all days (default: 10000)
        max_context_chars: Upper bound on query context text (default: 10000)
    """
    data_dir: str = "~/screenlog-data"
    retention_days: int = 7
    max_screenshots: int = 10000
    max_context_chars: int = 10000


@dataclass(frozen=True)
class Config:
    """Top-level configuration container.

    Attributes:
        model: Model backend settings
        capture: Capture settings
        storage: Storage settings
    """
    model: ModelConfig = field(default_factory=ModelConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


# ============ Normalization ============

def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off", ""):
            return False
    return default


def _as_int(value: Any, default: int, minimum: Optional[int] = None,
            maximum: Optional[int] = None) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        number = default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def _as_float(value: Any, default: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    if number != number:  # NaN
        number = default
    return min(maximum, max(minimum, number))


def _as_str(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value).strip()


def _as_choice(value: Any, choices: tuple, default: str) -> str:
    text = _as_str(value, default).lower()
    return text if text in choices else default


def _section(data: Mapping, key: str) -> dict:
    value = data.get(key) if isinstance(data, Mapping) else None
    if not isinstance(value, Mapping):
        return {}
    return dict(value)


def _warn_unknown(data: Mapping, dataclass_type, prefix: str) -> None:
    known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
    unknown = set(data.keys()) - known_fields
    if unknown:
        logger.debug(f"Ignoring unknown config fields in {prefix}: {unknown}")


def normalize_config(data: Optional[Mapping]) -> Config:
    """Build a complete, validated Config from a possibly sparse mapping.

    Missing sections and fields take their dataclass defaults, loosely typed
    values (strings from a form, ints for floats) are coerced and numeric
    settings are clamped to their valid ranges. Unknown keys are ignored.

    Args:
        data: Mapping as read from YAML or built from a form. None means defaults.

    Returns:
        A fully populated Config. Normalizing a normalized config's dict
        yields an equal value.
    """
    data = data or {}
    if isinstance(data, Config):
        data = asdict(data)

    model = _section(data, "model")
    api = _section(model, "api")
    ollama = _section(model, "ollama")
    capture = _section(data, "capture")
    storage = _section(data, "storage")

    _warn_unknown(model, ModelConfig, "model")
    _warn_unknown(capture, CaptureConfig, "capture")
    _warn_unknown(storage, StorageConfig, "storage")

    d_api = ApiConfig()
    d_ollama = OllamaConfig()
    d_model = ModelConfig()
    d_capture = CaptureConfig()
    d_storage = StorageConfig()

    return Config(
        model=ModelConfig(
            provider=_as_choice(model.get("provider"), PROVIDERS, d_model.provider),
            api=ApiConfig(
                type=_as_choice(api.get("type"), API_TYPES, d_api.type),
                endpoint=_as_str(api.get("endpoint"), d_api.endpoint) or d_api.endpoint,
                api_key=_as_str(api.get("api_key"), d_api.api_key),
                model=_as_str(api.get("model"), d_api.model) or d_api.model,
            ),
            ollama=OllamaConfig(
                endpoint=_as_str(ollama.get("endpoint"), d_ollama.endpoint) or d_ollama.endpoint,
                model=_as_str(ollama.get("model"), d_ollama.model) or d_ollama.model,
            ),
            timeout_seconds=_as_int(model.get("timeout_seconds"), d_model.timeout_seconds, 1, 600),
            max_attempts=_as_int(model.get("max_attempts"), d_model.max_attempts, 1, 10),
            log_exchanges=_as_bool(model.get("log_exchanges"), d_model.log_exchanges),
        ),
        capture=CaptureConfig(
            enabled=_as_bool(capture.get("enabled"), d_capture.enabled),
            interval_ms=_as_int(capture.get("interval_ms"), d_capture.interval_ms, 200),
            compress_quality=_as_int(capture.get("compress_quality"), d_capture.compress_quality, 1, 100),
            skip_unchanged=_as_bool(capture.get("skip_unchanged"), d_capture.skip_unchanged),
            change_threshold=_as_float(capture.get("change_threshold"), d_capture.change_threshold,
                                       MIN_CHANGE_THRESHOLD),
            recent_summary_limit=_as_int(capture.get("recent_summary_limit"),
                                         d_capture.recent_summary_limit, 1, 100),
            recent_detail_limit=_as_int(capture.get("recent_detail_limit"),
                                        d_capture.recent_detail_limit, 0, 100),
            alert_confidence_threshold=_as_float(capture.get("alert_confidence_threshold"),
                                                 d_capture.alert_confidence_threshold),
            alert_cooldown_seconds=_as_int(capture.get("alert_cooldown_seconds"),
                                           d_capture.alert_cooldown_seconds, 5),
            save_screenshots=_as_bool(capture.get("save_screenshots"), d_capture.save_screenshots),
        ),
        storage=StorageConfig(
            data_dir=_as_str(storage.get("data_dir"), d_storage.data_dir) or d_storage.data_dir,
            retention_days=_as_int(storage.get("retention_days"), d_storage.retention_days, 1),
            max_screenshots=_as_int(storage.get("max_screenshots"), d_storage.max_screenshots, 1),
            max_context_chars=_as_int(storage.get("max_context_chars"), d_storage.max_context_chars, 500),
        ),
    )


# Flat settings-form field -> path inside the config dict
FORM_FIELDS = {
    "provider": ("model", "provider"),
    "api_type": ("model", "api", "type"),
    "api_endpoint": ("model", "api", "endpoint"),
    "api_key": ("model", "api", "api_key"),
    "api_model": ("model", "api", "model"),
    "ollama_endpoint": ("model", "ollama", "endpoint"),
    "ollama_model": ("model", "ollama", "model"),
    "timeout_seconds": ("model", "timeout_seconds"),
    "max_attempts": ("model", "max_attempts"),
    "log_exchanges": ("model", "log_exchanges"),
    "capture_enabled": ("capture", "enabled"),
    "interval_ms": ("capture", "interval_ms"),
    "compress_quality": ("capture", "compress_quality"),
    "skip_unchanged": ("capture", "skip_unchanged"),
    "change_threshold": ("capture", "change_threshold"),
    "recent_summary_limit": ("capture", "recent_summary_limit"),
    "recent_detail_limit": ("capture", "recent_detail_limit"),
    "alert_confidence_threshold": ("capture", "alert_confidence_threshold"),
    "alert_cooldown_seconds": ("capture", "alert_cooldown_seconds"),
    "save_screenshots": ("capture", "save_screenshots"),
    "data_dir": ("storage", "data_dir"),
    "retention_days": ("storage", "retention_days"),
    "max_screenshots": ("storage", "max_screenshots"),
    "max_context_chars": ("storage", "max_context_chars"),
}


def build_config_from_form(form: Mapping[str, Any], base: Optional[Config] = None) -> Config:
    """Build a Config from a flat settings form.

    Fields absent from the form keep the value from ``base`` (defaults when
    no base is given). The result is normalized, so string inputs such as
    ``"1500"`` or ``"on"`` are accepted.

    Example:
        >>> cfg = build_config_from_form({"provider": "ollama", "interval_ms": "2000"})
        >>> cfg.capture.interval_ms
        2000
    """
    data = asdict(base or Config())
    for key, path in FORM_FIELDS.items():
        if key not in form:
            continue
        target = data
        for part in path[:-1]:
            target = target[part]
        target[path[-1]] = form[key]
    return normalize_config(data)


def config_to_form(config: Config) -> dict:
    """Flatten a Config into settings-form fields (inverse of build_config_from_form)."""
    data = asdict(config)
    form = {}
    for key, path in FORM_FIELDS.items():
        value = data
        for part in path:
            value = value[part]
        form[key] = value
    return form


def replace_setting(config: Config, section: str, key: str, value: Any) -> Config:
    """Return a copy of ``config`` with one setting changed.

    ``section`` may be dotted for nested sections, e.g. ``"model.api"``.

    Raises:
        AttributeError: If the section or key does not exist.
    """
    parts = section.split(".")
    chain = [config]
    for part in parts:
        chain.append(getattr(chain[-1], part))
    if not hasattr(chain[-1], key):
        raise AttributeError(f"{section} has no setting {key}")

    updated = dataclasses.replace(chain[-1], **{key: value})
    for parent, part in zip(reversed(chain[:-1]), reversed(parts)):
        updated = dataclasses.replace(parent, **{part: updated})
    return normalize_config(asdict(updated))


# ============ Persistence ============

def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2, allow_unicode=True)
    tmp_path.replace(path)


def _read_yaml(path: Path) -> dict:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"top level of {path} is not a mapping")
    return data


class ConfigManager:
    """Manages loading, saving, and updating the active configuration.

    Handles YAML configuration file I/O with automatic creation of default
    configuration and merging of user settings with defaults. Because Config
    values are frozen, every change swaps ``self.config`` for a new value;
    holders of an older snapshot are unaffected.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.update('model.ollama', 'model', 'llava:13b')
        True
    """

    DEFAULT_PATH = Path("~/.config/screenlog/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = self._load()

    @property
    def profiles_dir(self) -> Path:
        """Directory holding named profiles, next to the config file."""
        return self.path.parent / "profiles"

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use defaults from dataclass definitions.
            Invalid YAML returns default Config.
        """
        if self.path.exists():
            try:
                data = _read_yaml(self.path)
                logger.info(f"Loaded configuration from {self.path}")
                return normalize_config(data)
            except (yaml.YAMLError, OSError) as e:
                logger.warning(f"Failed to load config from {self.path}: {e}")
                logger.info("Using default configuration")
                return Config()
        else:
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            _write_yaml(self.path, asdict(self.config))
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def replace(self, config: Config) -> Config:
        """Make ``config`` the active configuration and persist it."""
        self.config = normalize_config(asdict(config))
        self.save()
        return self.config

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Args:
            section: Config section name, dotted for nested ones (e.g. 'capture', 'model.api')
            key: Setting name within section (e.g. 'interval_ms')
            value: New value to set

        Returns:
            True if value was changed and saved, False if unchanged or invalid
        """
        try:
            updated = replace_setting(self.config, section, key, value)
        except AttributeError:
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        if updated == self.config:
            logger.debug(f"No change for {section}.{key} (already {value})")
            return False

        self.config = updated
        self.save()
        logger.info(f"Updated {section}.{key}")
        return True

    def reload(self) -> Config:
        """Reload configuration from file, picking up external changes."""
        self.config = self._load()
        logger.info("Configuration reloaded")
        return self.config

    def create_default_file(self) -> None:
        """Create the config file with default values if it doesn't exist."""
        if not self.path.exists():
            self.save()
            logger.info(f"Created default configuration at {self.path}")
        else:
            logger.warning(f"Configuration file already exists at {self.path}")


# ============ Profiles ============

_INVALID_NAME_CHARS = set('\\/:*?"<>|')
_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


def sanitize_profile_name(name: str) -> str:
    """Validate a profile name and return it in canonical form.

    Names become file names, so anything that could escape the profiles
    directory or is not portable across file systems is rejected.

    Raises:
        ProfileError: If the name is empty, too long or contains illegal characters.
    """
    base = (name or "").strip()
    for suffix in (".yaml", ".yml"):
        if base.lower().endswith(suffix):
            base = base[:-len(suffix)].strip()
            break

    if not base:
        raise ProfileError("Profile name cannot be empty")
    if len(base) > 64:
        raise ProfileError("Profile name is too long (max 64 characters)")
    if base in (".", ".."):
        raise ProfileError(f"Profile name {base!r} is not allowed")
    if base.endswith((" ", ".")):
        raise ProfileError("Profile name cannot end with a space or a period")
    if any(ch in _INVALID_NAME_CHARS or ord(ch) < 32 or ord(ch) == 127 for ch in base):
        raise ProfileError("Profile name contains invalid characters")
    if base.upper() in _RESERVED_NAMES:
        raise ProfileError(f"Profile name {base!r} is reserved")
    return base


class ProfileStore:
    """Named configuration snapshots, one YAML file per profile.

    A profile is "active" when its stored configuration equals the live one;
    there is no separate pointer to keep in sync.
    """

    SUFFIX = ".yaml"

    def __init__(self, profiles_dir: Path):
        self.profiles_dir = Path(profiles_dir).expanduser()

    def _path(self, name: str) -> Path:
        return self.profiles_dir / f"{sanitize_profile_name(name)}{self.SUFFIX}"

    def list_profiles(self) -> list[str]:
        """Return profile names sorted alphabetically."""
        if not self.profiles_dir.exists():
            return []
        return sorted(p.stem for p in self.profiles_dir.glob(f"*{self.SUFFIX}") if p.is_file())

    def save_profile(self, name: str, config: Config) -> str:
        """Store ``config`` under ``name``, overwriting any existing profile.

        Returns:
            The sanitized profile name.
        """
        path = self._path(name)
        _write_yaml(path, asdict(config))
        logger.info(f"Saved profile {path.stem}")
        return path.stem

    def load_profile(self, name: str) -> Config:
        """Load a profile.

        Raises:
            ProfileError: If the name is invalid or the profile does not exist.
            ConfigError: If the profile file cannot be read or parsed.
        """
        path = self._path(name)
        if not path.exists():
            raise ProfileError(f"Profile {path.stem!r} does not exist")
        try:
            return normalize_config(_read_yaml(path))
        except (yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Failed to read profile {path.stem!r}: {e}") from e

    def delete_profile(self, name: str) -> bool:
        """Delete a profile. Returns False if it did not exist."""
        path = self._path(name)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted profile {path.stem}")
        return True

    def find_active(self, config: Config) -> Optional[str]:
        """Name of the first profile whose content equals ``config``, if any."""
        for name in self.list_profiles():
            try:
                if self.load_profile(name) == config:
                    return name
            except (ProfileError, ConfigError) as e:
                logger.warning(f"Skipping unreadable profile {name}: {e}")
        return None
