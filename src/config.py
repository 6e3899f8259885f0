"""Environment configuration management.

Configuration is loaded from site-config YAML files:
- site.yaml: Site-wide defaults
- envs/*.yaml: Per-environment targets (subscription, resource group,
  configuration store, secret store, cluster)
- stacks/*.yaml: Resource descriptor sets (see descriptor.py)

The merge order is: site defaults -> env file -> CLI overrides.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


# Keys an env file may set; everything else is ignored with the site defaults
_ENV_KEYS = (
    'subscription',
    'resource_group',
    'location',
    'label',
    'config_store',
    'config_store_kind',
    'configmap_name',
    'secret_store',
    'secret_store_uri',
    'cluster_name',
    'namespace',
    'use_invoke',
    'private_link_service',
    'container_registry',
    'source_registry',
    'max_parallel',
    'retry_attempts',
    'retry_base_delay',
    'provision_timeout',
)


@dataclass
class EnvConfig:
    """Configuration for a target deployment environment.

    The environment name doubles as the default label for configuration
    entries, so one configuration store can serve several environments.
    """
    name: str
    config_file: Path
    subscription: str = ''
    resource_group: str = ''
    location: str = ''
    label: str = ''
    config_store: str = ''
    config_store_kind: str = 'appconfig'  # appconfig | configmap
    configmap_name: str = 'platform-config'
    secret_store: str = ''
    secret_store_uri: str = ''
    cluster_name: str = ''
    namespace: str = 'default'
    use_invoke: bool = False  # Reach private clusters via `az aks command invoke`
    private_link_service: str = ''
    container_registry: str = ''  # Registry name, without .azurecr.io
    source_registry: str = ''  # Login server images are imported from
    max_parallel: int = 1
    retry_attempts: int = 3
    retry_base_delay: float = 2.0
    provision_timeout: int = 1800

    # Raw env file content, for stack-specific extras
    extra: dict = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)

        if self.config_file.exists():
            self._load_from_yaml()

        if not self.label:
            self.label = self.name

        # Secret references need the vault URI with a trailing slash
        if not self.secret_store_uri and self.secret_store:
            self.secret_store_uri = f'https://{self.secret_store}.vault.azure.net/'
        if self.secret_store_uri and not self.secret_store_uri.endswith('/'):
            self.secret_store_uri += '/'

    def _load_from_yaml(self):
        """Load configuration from env YAML with site.yaml defaults."""
        site_config_dir = self.config_file.parent.parent

        site_defaults = {}
        site_file = site_config_dir / 'site.yaml'
        if site_file.exists():
            site_defaults = _parse_yaml(site_file).get('defaults', {}) or {}

        env_data = _parse_yaml(self.config_file)
        self.extra = env_data

        defaults = {f.name: f.default for f in fields(self) if f.name in _ENV_KEYS}
        for key in _ENV_KEYS:
            # Values passed to the constructor win over files
            if getattr(self, key) != defaults[key]:
                continue
            if key in env_data:
                setattr(self, key, env_data[key])
            elif key in site_defaults:
                setattr(self, key, site_defaults[key])

        self.max_parallel = int(self.max_parallel)
        self.retry_attempts = int(self.retry_attempts)
        self.retry_base_delay = float(self.retry_base_delay)
        self.provision_timeout = int(self.provision_timeout)

        if self.config_store_kind not in ('appconfig', 'configmap'):
            raise ConfigError(
                f"Env '{self.name}': config_store_kind must be 'appconfig' or "
                f"'configmap', got '{self.config_store_kind}'"
            )

    @property
    def scope(self) -> str:
        """Resource scope the provider creates resources in."""
        return self.resource_group


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the platform-driver directory."""
    return Path(__file__).parent.parent  # src/ -> platform-driver/


def get_site_config_dir() -> Path:
    """Discover site-config directory.

    Resolution order:
    1. $PLATFORM_SITE_CONFIG environment variable
    2. ../site-config/ sibling directory (dev workspace)
    3. /usr/local/etc/platform-driver/
    """
    if env_path := os.environ.get('PLATFORM_SITE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"PLATFORM_SITE_CONFIG={env_path} does not exist")

    sibling = get_base_dir().parent / 'site-config'
    if sibling.exists():
        return sibling

    fhs_path = Path('/usr/local/etc/platform-driver')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "site-config not found. "
        "Set PLATFORM_SITE_CONFIG or clone site-config as sibling directory."
    )


def list_envs() -> list[str]:
    """List available environments from site-config/envs/."""
    try:
        site_config = get_site_config_dir()
    except ConfigError:
        return []

    envs_dir = site_config / 'envs'
    if not envs_dir.exists():
        return []
    return sorted(f.stem for f in envs_dir.glob('*.yaml') if f.is_file())


def load_env_config(env: str, site_config_dir: Optional[Path] = None) -> EnvConfig:
    """Load configuration for a named environment.

    Raises:
        ConfigError: If envs/{env}.yaml does not exist
    """
    site_config = site_config_dir or get_site_config_dir()
    env_file = site_config / 'envs' / f'{env}.yaml'
    if not env_file.exists():
        available = sorted(f.stem for f in (site_config / 'envs').glob('*.yaml'))
        raise ConfigError(
            f"Environment '{env}' not found at {env_file}. "
            f"Available: {', '.join(available) if available else 'none configured'}"
        )
    return EnvConfig(name=env, config_file=env_file)
