"""Gateway configuration management.

Configuration is read once at startup. Each setting resolves in order:
1. Environment variable (FLEETPKG_*)
2. Profile file: config.yaml in $FLEETPKG_HOME (default: ~/.fleetpkg)
3. Built-in default

Profile file layout:

    kibana:
      host: https://kibana.example.com:5601
      username: elastic
      password: changeme
      api_key: ""
      ca_cert: /etc/fleetpkg/ca.crt
      insecure: false
      timeout: 120
    conditions:
      strictness: warn
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from conditions import STRICTNESS_LEVELS, STRICTNESS_WARN

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'config.yaml'

DEFAULT_KIBANA_HOST = 'https://127.0.0.1:5601'
DEFAULT_USERNAME = 'elastic'
DEFAULT_TIMEOUT = 120.0

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class GatewayConfig:
    """Connection settings for the management plane.

    api_key takes precedence over username/password when both are set.
    """
    kibana_host: str = DEFAULT_KIBANA_HOST
    username: str = DEFAULT_USERNAME
    password: str = field(default='', repr=False)
    api_key: str = field(default='', repr=False)
    ca_cert: Optional[Path] = None
    insecure: bool = False
    timeout: float = DEFAULT_TIMEOUT
    condition_strictness: str = STRICTNESS_WARN
    config_file: Optional[Path] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key or (self.username and self.password))


def get_config_dir() -> Path:
    """Discover the profile directory.

    Resolution order:
    1. $FLEETPKG_HOME environment variable
    2. ~/.fleetpkg
    """
    if env_path := os.environ.get('FLEETPKG_HOME'):
        return Path(env_path)
    return Path.home() / '.fleetpkg'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _section(data: dict, name: str, path: Path) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' in {path} must be a mapping")
    return section


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _to_timeout(value: Any, origin: str) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid timeout '{value}' ({origin}): expected seconds")
    if timeout <= 0:
        raise ConfigError(f"Invalid timeout '{value}' ({origin}): must be positive")
    return timeout


def load_config(config_dir: Optional[Path] = None) -> GatewayConfig:
    """Load gateway configuration.

    Args:
        config_dir: Profile directory override (default: get_config_dir())

    Returns:
        GatewayConfig instance

    Raises:
        ConfigError: If the profile file or a setting is invalid
    """
    config_dir = config_dir or get_config_dir()
    config_file = config_dir / CONFIG_FILENAME

    kibana: dict = {}
    conditions: dict = {}
    if config_file.exists():
        logger.debug(f"Loading profile {config_file}")
        data = _parse_yaml(config_file)
        kibana = _section(data, 'kibana', config_file)
        conditions = _section(data, 'conditions', config_file)
    else:
        config_file = None

    def setting(env_var: str, section: dict, key: str, default: Any) -> Any:
        if (value := os.environ.get(env_var)) is not None and value != '':
            return value
        if section.get(key) is not None:
            return section[key]
        return default

    host = str(setting('FLEETPKG_KIBANA_HOST', kibana, 'host', DEFAULT_KIBANA_HOST))
    ca_cert = setting('FLEETPKG_CA_CERT', kibana, 'ca_cert', None)
    timeout = _to_timeout(
        setting('FLEETPKG_TIMEOUT', kibana, 'timeout', DEFAULT_TIMEOUT),
        'FLEETPKG_TIMEOUT or kibana.timeout',
    )

    strictness = str(setting(
        'FLEETPKG_CONDITION_STRICTNESS', conditions, 'strictness', STRICTNESS_WARN
    )).lower()
    if strictness not in STRICTNESS_LEVELS:
        raise ConfigError(
            f"Invalid condition strictness '{strictness}'. "
            f"Expected one of: {', '.join(STRICTNESS_LEVELS)}"
        )

    return GatewayConfig(
        kibana_host=host.rstrip('/'),
        username=str(setting('FLEETPKG_KIBANA_USERNAME', kibana, 'username', DEFAULT_USERNAME)),
        password=str(setting('FLEETPKG_KIBANA_PASSWORD', kibana, 'password', '')),
        api_key=str(setting('FLEETPKG_KIBANA_API_KEY', kibana, 'api_key', '')),
        ca_cert=Path(ca_cert) if ca_cert else None,
        insecure=_to_bool(setting('FLEETPKG_INSECURE', kibana, 'insecure', False)),
        timeout=timeout,
        condition_strictness=strictness,
        config_file=config_file,
    )
