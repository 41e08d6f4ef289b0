import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Dict, Any, Optional, Union

import appdirs

from .models import ECP_PORT

logger = logging.getLogger(__name__)

SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900

# Must be > 0
POSITIVE_KEYS = (
    "ssdp_timeout", "ssdp_max_listen", "connect_timeout", "read_timeout",
    "probe_timeout", "poll_interval", "scan_workers", "control_port",
)
# Must be >= 0
NON_NEGATIVE_KEYS = ("app_settle_delay", "player_settle_delay")


@dataclass
class BridgeConfig:
    """Tunables for discovery and ECP control."""

    control_port: int = ECP_PORT
    app_id: str = "dev"
    builtin_player_id: str = "11"
    content_id: str = "test_video"
    search_target: str = "roku:ecp"
    ssdp_timeout: float = 3.0
    ssdp_max_listen: float = 10.0
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    probe_timeout: float = 1.0
    app_settle_delay: float = 2.0
    player_settle_delay: float = 3.0
    poll_active_app: bool = False
    poll_interval: float = 0.5
    scan_workers: int = 1
    fallback_ranges: List[str] = field(default_factory=lambda: [
        "192.168.1.0/24",
        "192.168.0.0/24",
        "10.0.0.0/24",
    ])

    @property
    def http_timeout(self):
        return (self.connect_timeout, self.read_timeout)


class ConfigStore:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        if path is None:
            self.app_dir = Path(appdirs.user_config_dir("roku_bridge"))
            self.config_file = self.app_dir / "config.json"
        else:
            self.config_file = Path(path)
            self.app_dir = self.config_file.parent

    def _ensure_directory(self):
        """Create config directory if it doesn't exist."""
        self.app_dir.mkdir(parents=True, exist_ok=True)

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only known keys whose values match the default's type and range.

        Args:
            data: Raw mapping read from the config file

        Returns:
            Dict of accepted overrides
        """
        defaults = asdict(BridgeConfig())
        accepted = {}
        for key, value in data.items():
            if key not in defaults:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            expected = type(defaults[key])
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            if expected is list:
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    logger.error(f"Invalid value for {key}: {value!r}")
                    continue
            elif not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
                logger.error(f"Invalid value for {key}: {value!r}")
                continue
            if (key in POSITIVE_KEYS and value <= 0) or (key in NON_NEGATIVE_KEYS and value < 0):
                logger.error(f"Out of range value for {key}: {value!r}")
                continue
            accepted[key] = value
        return accepted

    def load(self) -> BridgeConfig:
        """Load configuration, falling back to defaults.

        Returns:
            BridgeConfig with any valid stored overrides applied
        """
        try:
            if not self.config_file.exists():
                return BridgeConfig()

            with self.config_file.open('r') as f:
                data = json.load(f)

            if not isinstance(data, dict):
                logger.error("Invalid config data in storage")
                return BridgeConfig()

            return BridgeConfig(**self._validate(data))
        except (OSError, ValueError) as e:
            logger.error(f"Error loading config: {e}")
            return BridgeConfig()

    def save(self, config: BridgeConfig) -> bool:
        """Save configuration to storage.

        Args:
            config: Configuration to persist

        Returns:
            bool: True if save was successful, False otherwise
        """
        try:
            self._ensure_directory()
            with self.config_file.open('w') as f:
                json.dump(asdict(config), f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Error saving config: {e}")
            return False

