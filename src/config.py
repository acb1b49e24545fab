"""Driver configuration management.

Settings are loaded from a YAML file that tells the driver which provider
to talk to and where to keep state:

    provider: http            # memory | http
    endpoint: https://cloud.example:8443/v1
    token_file: ~/.config/stack-driver/token
    verify_tls: true
    timeout: 300
    max_workers: 2
    state_dir: /var/lib/stack-driver/states
    ignore_changes:
      Instance: [tags]

Resolution order for the settings file:
1. Explicit path (--config)
2. $STACK_DRIVER_CONFIG environment variable
3. ./stack-driver.yaml in the working directory
4. Built-in defaults (memory provider, state under <repo>/.states/)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

SUPPORTED_PROVIDERS = {'memory', 'http'}

DEFAULT_CONFIG_NAME = 'stack-driver.yaml'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class DriverSettings:
    """Settings for a driver run.

    Attributes:
        provider: Provider backend ('memory' or 'http')
        endpoint: Base URL of the provider API (http provider)
        token: Bearer token for the provider API
        verify_tls: Verify the provider's TLS certificate
        timeout: Seconds a single provider call may take
        max_workers: Independent nodes reconciled concurrently
        state_dir: Root directory for per-stack state files
        memory_path: JSON file backing the memory provider (None = process only)
        ignore_changes: Extra per-node attributes to ignore after creation
        config_file: Where the settings were loaded from (None = defaults)
    """
    provider: str = 'memory'
    endpoint: str = ''
    token: str = field(default='', repr=False)
    verify_tls: bool = True
    timeout: float = 300.0
    max_workers: int = 1
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    memory_path: Optional[Path] = None
    ignore_changes: dict[str, list[str]] = field(default_factory=dict)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir).expanduser()
        if isinstance(self.memory_path, str):
            self.memory_path = Path(self.memory_path).expanduser()

        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unsupported provider '{self.provider}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_PROVIDERS))}"
            )
        if self.provider == 'http' and not self.endpoint:
            raise ConfigError("Provider 'http' requires 'endpoint'")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")

    def state_path(self, stack_name: str) -> Path:
        """Path of the state file for a stack."""
        return self.state_dir / stack_name / 'state.json'

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'DriverSettings':
        """Create settings from a parsed YAML mapping."""
        token = data.get('token', '')
        if not token and (token_file := data.get('token_file')):
            token = _read_token(Path(token_file).expanduser())

        ignore = data.get('ignore_changes') or {}
        if not isinstance(ignore, dict):
            raise ConfigError("ignore_changes must map node names to attribute lists")

        kwargs = {}
        if 'state_dir' in data:
            kwargs['state_dir'] = data['state_dir']
        return cls(
            provider=data.get('provider', 'memory'),
            endpoint=str(data.get('endpoint', '')).rstrip('/'),
            token=token,
            verify_tls=bool(data.get('verify_tls', True)),
            timeout=float(data.get('timeout', 300)),
            max_workers=int(data.get('max_workers', 1)),
            memory_path=data.get('memory_path'),
            ignore_changes={str(k): [str(a) for a in v or []] for k, v in ignore.items()},
            config_file=config_file,
            **kwargs,
        )


def _read_token(path: Path) -> str:
    """Read a bearer token from a file."""
    if not path.exists():
        raise ConfigError(f"Token file not found: {path}")
    return path.read_text(encoding='utf-8').strip()


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


def get_base_dir() -> Path:
    """Get the repository directory."""
    return Path(__file__).parent.parent  # src/ -> repo/


def discover_config_file() -> Optional[Path]:
    """Discover the driver settings file.

    Resolution order:
    1. $STACK_DRIVER_CONFIG environment variable
    2. ./stack-driver.yaml in the working directory
    """
    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        path = Path(env_path).expanduser()
        if path.exists():
            return path
        raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.exists():
        return local

    return None


def load_settings(path: Optional[str] = None) -> DriverSettings:
    """Load driver settings from a file, or discover one, or use defaults.

    Raises:
        ConfigError: If an explicit file is missing or any file is invalid
    """
    if path:
        config_file: Optional[Path] = Path(path).expanduser()
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
    else:
        config_file = discover_config_file()

    if config_file is None:
        return DriverSettings()

    return DriverSettings.from_dict(_parse_yaml(config_file), config_file=config_file)
