#!/usr/bin/env -S python3 -B -u
"""
Configuration loader for the site simulator.

Provides centralized configuration loading for all components.

Configuration file location precedence:
1. Environment variable SITESIM_CONF (if set)
2. ~/sitesim.yaml (user's home directory)
3. ./sitesim.yaml (current directory)
"""

import copy
import os
import shlex
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from sitesim.core.exceptions import ConfigurationError
from sitesim.core.models import RoleKind, ReadinessPolicy, DEFAULT_PORTS
from sitesim.core.structured_logging import get_logger


logger = get_logger(__name__)


class SiteSimConfig:
    """Configuration for sites and the processes they launch."""

    DEFAULT_CONFIG = {
        'binaries': {
            'cache': '/usr/bin/memcached',
            'coordinator': '../modules/astaire/build/bin/rogers',
            'timer': '../modules/chronos/build/bin/chronos',
            'dns': '/usr/sbin/dnsmasq',
        },
        'ports': {kind.value: port for kind, port in DEFAULT_PORTS.items()},
        'readiness': {
            'initial_delay': 0.01,
            'interval': 1.0,
            'attempts': 5,
        },
        'process': {
            'stop_timeout': 10.0,
        },
        'dns': {
            'record_style': 'host-record',
        },
        'timer': {
            'max_tokens': 1000,
        },
    }

    def __init__(self, overrides: Optional[Dict[str, Any]] = None,
                 config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            overrides: Values merged over the defaults (and over any file)
            config_path: Optional path to a YAML configuration file
        """
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        self.config_path = config_path

        if config_path:
            self._load_from_file(config_path)

        if overrides:
            self._merge_config(overrides)

        self._apply_env_overrides()
        self._validate()

    def _load_from_file(self, config_path: str):
        """Load configuration from specified file."""
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}", config_file=config_path)

        try:
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, IOError) as e:
            raise ConfigurationError(f"Invalid configuration file: {e}", config_file=config_path, cause=e)

        if not isinstance(file_config, dict):
            raise ConfigurationError("Configuration must be a mapping", config_file=config_path)

        self._merge_config(file_config)
        logger.debug(f"Loaded sitesim config from {config_path}")

    def _merge_config(self, new_config: Dict[str, Any]):
        """Recursively merge new configuration into existing."""
        def merge_dict(base: dict, update: dict):
            for key, value in update.items():
                if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                    merge_dict(base[key], value)
                else:
                    base[key] = value

        merge_dict(self.config, new_config)

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        env_mappings = {
            'SITESIM_READY_ATTEMPTS': ('readiness', 'attempts', int),
            'SITESIM_READY_INTERVAL': ('readiness', 'interval', float),
            'SITESIM_STOP_TIMEOUT': ('process', 'stop_timeout', float),
        }

        for env_var, (section, key, converter) in env_mappings.items():
            if env_var in os.environ:
                try:
                    value = converter(os.environ[env_var])
                    self.config[section][key] = value
                    logger.debug(f"Applied env override: {env_var} -> {section}.{key}={value}")
                except (ValueError, KeyError) as e:
                    logger.warning(f"Invalid env variable {env_var}: {e}")

    def _validate(self):
        """Reject values the process layer cannot use."""
        for kind in RoleKind:
            if kind.value not in self.config['binaries']:
                raise ConfigurationError(f"No binary configured for {kind.value}", config_file=self.config_path)
            port = self.config['ports'].get(kind.value)
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise ConfigurationError(f"Invalid {kind.value} port: {port}", config_file=self.config_path)

        try:
            ReadinessPolicy.from_dict(self.config['readiness'])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid readiness settings: {e}", config_file=self.config_path, cause=e)

        if self.config['dns']['record_style'] not in ('host-record', 'address'):
            raise ConfigurationError(
                f"Unknown dns.record_style: {self.config['dns']['record_style']}",
                config_file=self.config_path
            )

    def binary(self, kind: RoleKind) -> List[str]:
        """Command prefix for launching a role, as an argv list."""
        value: Union[str, List[str]] = self.config['binaries'][kind.value]
        if isinstance(value, str):
            return shlex.split(value)
        return [str(part) for part in value]

    def port(self, kind: RoleKind) -> int:
        """Port instances of a role listen on."""
        return self.config['ports'][kind.value]

    @property
    def readiness(self) -> ReadinessPolicy:
        """Readiness probe cadence."""
        return ReadinessPolicy.from_dict(self.config['readiness'])

    @property
    def stop_timeout(self) -> float:
        """Seconds to wait for a process to exit after SIGTERM."""
        return float(self.config['process']['stop_timeout'])

    @property
    def dns_record_style(self) -> str:
        return self.config['dns']['record_style']

    @property
    def timer_max_tokens(self) -> int:
        return int(self.config['timer']['max_tokens'])

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., 'readiness.attempts')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self.config
        for part in key.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value


def find_config_file() -> Optional[Path]:
    """Return the first configuration file present in the search order."""
    candidates = []

    env_config = os.environ.get('SITESIM_CONF')
    if env_config:
        candidates.append(Path(env_config))

    candidates.extend([
        Path.home() / 'sitesim.yaml',
        Path('./sitesim.yaml')
    ])

    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_sitesim_config(overrides: Optional[Dict[str, Any]] = None) -> SiteSimConfig:
    """
    Load sitesim configuration with proper precedence.

    Args:
        overrides: Values applied on top of the file configuration

    Returns:
        SiteSimConfig instance
    """
    config_file = find_config_file()
    return SiteSimConfig(overrides=overrides,
                         config_path=str(config_file) if config_file else None)


def load_yaml_file(path: str) -> Dict[str, Any]:
    """Load a YAML document that must be a mapping."""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        raise ConfigurationError(f"Cannot read {path}: {e}", config_file=path, cause=e)

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping", config_file=path)
    return data


def get_log_level() -> int:
    """
    Work out the log level for launched processes from NOISY.

    NOISY=t:5 (or y:5, T:5, Y:5) selects level 5. Any other value, or no
    digits after the colon, gives 0.
    """
    val = os.environ.get('NOISY')
    if not val or val[0] not in 'TtYy':
        return 0

    _, sep, level = val.partition(':')
    if not sep:
        return 0

    digits = ''
    for ch in level.lstrip():
        if not digits and ch in '+-':
            digits = ch
        elif ch.isdigit():
            digits += ch
        else:
            break

    try:
        return int(digits)
    except ValueError:
        return 0
