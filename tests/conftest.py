"""Shared pytest fixtures for platform-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


@pytest.fixture
def site_config_dir(tmp_path):
    """Create temporary site-config directory structure.

    Creates minimal site-config with:
    - site.yaml (defaults)
    - envs/dev.yaml
    - stacks/platform.yaml (network -> identity -> cache)
    """
    for d in ['envs', 'stacks']:
        (tmp_path / d).mkdir(parents=True, exist_ok=True)

    (tmp_path / 'site.yaml').write_text("""
defaults:
  location: eastus
  subscription: 00000000-0000-0000-0000-000000000000
  retry_attempts: 2
  max_parallel: 1
""")

    (tmp_path / 'envs' / 'dev.yaml').write_text("""
resource_group: rg-platform-dev
config_store: appcs-platform-dev
secret_store: kv-platform-dev
cluster_name: aks-platform-dev
namespace: platform
max_parallel: 4
""")

    (tmp_path / 'stacks' / 'platform.yaml').write_text("""
name: platform
description: Network, identity and cache
descriptors:
  - kind: network
    name: network
    attributes:
      addressSpace:
        addressPrefixes: [10.0.0.0/16]
    publish: [subnetId]
  - kind: identity
    name: identity
    attributes:
      subnetId: ${network.subnetId}
    publish: [clientId]
  - kind: cache
    name: cache
    attributes:
      sku: {name: Standard, family: C, capacity: 1}
      allowedPrincipal: ${identity.principalId}
    publish: [host]
    secrets:
      primaryKey:
        name: redis-primary-key
        ref_key: CACHE_KEY_REF
    access:
      - principal: identity
        role: Redis Cache Contributor
config:
  APP_ENVIRONMENT: dev
generated_secrets:
  - name: session-secret
    description: Session signing key
""")

    return tmp_path


@pytest.fixture
def env_config(tmp_path):
    """EnvConfig with no backing file and no backoff delay."""
    from config import EnvConfig
    return EnvConfig(
        name='test',
        config_file=tmp_path / 'missing.yaml',
        resource_group='rg-test',
        location='eastus',
        retry_attempts=3,
        retry_base_delay=0.0,
    )


@pytest.fixture
def platform_outputs():
    """Provider outputs for the network -> identity -> cache scenario."""
    return {
        'network': {'subnetId': '/subnets/default'},
        'identity': {'principalId': 'principal-1', 'clientId': 'client-1'},
        'cache': {'host': 'cache.redis.cache.windows.net'},
    }
