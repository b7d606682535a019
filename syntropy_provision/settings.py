"""
Operator settings.

Settings are resolved from the environment with sensible defaults and can be
overridden by an optional YAML file at ~/.syntropy/config.yaml (or the path in
SYNTROPY_CONFIG). Only the keys listed in CONFIG_KEYS are accepted from the file.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml


GIB = 1024 ** 3
MIB = 1024 ** 2

DEFAULT_DNS_SERVERS = ['8.8.8.8', '8.8.4.4', '1.1.1.1', '1.0.0.1']

CONFIG_KEYS = {
    'discovery_endpoint': str,
    'dns_servers': list,
    'locale': str,
    'timezone': str,
    'primary_interface': str,
    'gateway': str,
    'mesh_gateway': str,
    'mgmt_gateway': str,
    'cidata_size_mib': int,
    'download_timeout': int,
    'write_timeout': int,
    'command_timeout': int,
    'tls_ca_key_bits': int,
    'tls_node_key_bits': int,
}


def operator_home(environ: Optional[Dict[str, str]] = None) -> Path:
    """Root of the operator's state trees (HOME, then USERPROFILE)"""
    environ = os.environ if environ is None else environ
    home = environ.get('HOME') or environ.get('USERPROFILE')
    if home:
        return Path(home)
    return Path.home()


def operator_name(environ: Optional[Dict[str, str]] = None) -> str:
    """Default operator identity (USER, then USERNAME)"""
    environ = os.environ if environ is None else environ
    return environ.get('USER') or environ.get('USERNAME') or 'unknown'


@dataclass(frozen=True)
class Settings:
    """Resolved operator settings"""

    state_root: Path
    operator: str = 'unknown'
    discovery_endpoint: str = 'syntropy-discovery.local'
    dns_servers: List[str] = field(default_factory=lambda: list(DEFAULT_DNS_SERVERS))
    locale: str = 'en_US.UTF-8'
    timezone: str = 'UTC'
    primary_interface: str = 'lan-en'
    gateway: str = '192.168.1.1'
    mesh_gateway: str = '172.20.0.1'
    mgmt_gateway: str = '192.168.100.1'
    cidata_size_mib: int = 128
    download_timeout: int = 30 * 60
    write_timeout: int = 30 * 60
    command_timeout: int = 30
    tls_ca_key_bits: int = 4096
    tls_node_key_bits: int = 2048
    log_level: str = 'INFO'

    @property
    def keys_dir(self) -> Path:
        return self.state_root / 'keys'

    @property
    def nodes_dir(self) -> Path:
        return self.state_root / 'nodes'

    @property
    def cache_dir(self) -> Path:
        return self.state_root / 'cache'

    @property
    def work_root(self) -> Path:
        return self.state_root / 'work'

    @property
    def logs_dir(self) -> Path:
        return self.state_root / 'logs'

    @property
    def locks_dir(self) -> Path:
        return self.state_root / 'locks'

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, config_path: Optional[Path] = None) -> 'Settings':
        """Build settings from the environment and the optional config file"""
        environ = os.environ if environ is None else environ
        state_root = operator_home(environ) / '.syntropy'

        settings = cls(
            state_root=state_root,
            operator=operator_name(environ),
            log_level=environ.get('SYNTROPY_LOG_LEVEL', 'INFO'),
        )

        if config_path is None:
            override = environ.get('SYNTROPY_CONFIG')
            config_path = Path(override) if override else state_root / 'config.yaml'
        if config_path.exists():
            settings = settings.with_overrides(load_config_file(config_path))
        return settings

    def with_overrides(self, overrides: Dict[str, object]) -> 'Settings':
        return replace(self, **overrides)


def load_config_file(path: Path) -> Dict[str, object]:
    """Load and type-check the YAML configuration file"""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    overrides = {}
    for key, value in data.items():
        expected = CONFIG_KEYS.get(key)
        if expected is None:
            raise ValueError(f"{path}: unknown setting '{key}'")
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ValueError(f"{path}: setting '{key}' must be of type {expected.__name__}")
        if key == 'dns_servers':
            value = [str(item) for item in value]
        overrides[key] = value
    return overrides
