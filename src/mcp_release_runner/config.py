"""User configuration loaded from config.yml."""
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import appdirs
import yaml

from mcp_release_runner.binaries.constants import DEFAULT_USER_AGENT
from mcp_release_runner.logging import get_logger

logger = get_logger(__name__)

APP_NAME = "mcp-release-runner"
CONFIG_FILE = "config.yml"

SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)?\s*$", re.IGNORECASE)


def parse_size(value: Union[str, int]) -> int:
    """Parse a size such as "2GB" or "512 MB" into bytes (binary units)."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Size may not be negative: {value}")
        return value

    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * SIZE_UNITS[(unit or "").upper()])


@dataclass
class CacheConfig:
    directory: Optional[str] = None
    max_versions_per_repo: int = 3
    max_total_size: str = "2GB"
    auto_cleanup: bool = True


@dataclass
class NetworkConfig:
    timeout: float = 30
    retries: int = 3
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class BehaviorConfig:
    verbose: bool = False
    show_progress: bool = True


@dataclass
class AdvancedConfig:
    checksum_validation: bool = True


@dataclass
class Config:
    cache: CacheConfig = field(default_factory=CacheConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    behavior: BehaviorConfig = field(default_factory=BehaviorConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def max_total_size_bytes(self) -> int:
        return parse_size(self.cache.max_total_size)


def _coerce(value: Any, expected: Any) -> Any:
    """Convert a YAML value to a settings field type, raising ValueError if it cannot be."""
    if expected == Optional[str]:
        if value is None:
            return None
        expected = str
    if isinstance(value, bool) or expected is bool:
        if isinstance(value, bool) and expected is bool:
            return value
        raise ValueError(f"expected {expected.__name__}, got {type(value).__name__}")
    if isinstance(value, (dict, list)) or value is None:
        raise ValueError(f"expected {expected.__name__}, got {type(value).__name__}")
    if expected is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected int, got {value!r}")
        return int(value)
    if expected is float:
        return float(value)
    return str(value)


def merge_config(raw: Dict[str, Any]) -> Config:
    """Overlay user settings on the defaults, one section at a time."""
    config = Config()
    for section in fields(Config):
        values = raw.get(section.name)
        if values is None:
            continue
        if not isinstance(values, dict):
            logger.warning("config_section_ignored", section=section.name, value=values)
            continue

        current = getattr(config, section.name)
        known = {f.name: f.type for f in fields(current)}
        for key, value in values.items():
            if key not in known:
                logger.debug("config_key_ignored", section=section.name, key=key)
                continue
            try:
                coerced = _coerce(value, known[key])
                if key == "max_total_size":
                    parse_size(coerced)
                setattr(current, key, coerced)
            except (TypeError, ValueError):
                logger.warning(
                    "config_value_ignored", section=section.name, key=key, value=value
                )
    return config


class ConfigManager:
    """Locates, reads and writes the configuration file."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir or appdirs.user_config_dir(APP_NAME))
        self.config_path = self.config_dir / CONFIG_FILE

    def get_config(self) -> Config:
        """Load config.yml merged over the defaults.

        A missing file is created with the defaults; an unreadable one is
        reported and the defaults are used.
        """
        if not self.config_path.is_file():
            config = Config()
            try:
                self.save_config(config)
            except OSError as e:
                logger.warning("config_write_failed", path=str(self.config_path), error=str(e))
            return config

        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning("config_invalid", path=str(self.config_path), error=str(e))
            return Config()

        if raw is None:
            return Config()
        if not isinstance(raw, dict):
            logger.warning("config_invalid", path=str(self.config_path), error="not a mapping")
            return Config()

        return merge_config(raw)

    def save_config(self, config: Config) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(
            yaml.safe_dump(config.to_dict(), sort_keys=False), encoding="utf-8"
        )
        logger.debug("config_saved", path=str(self.config_path))


def cache_dir(config: Config) -> Path:
    """Cache root: ``cache.directory`` if set, else the per-user cache dir."""
    if config.cache.directory:
        return Path(config.cache.directory).expanduser()
    return Path(appdirs.user_cache_dir(APP_NAME))
