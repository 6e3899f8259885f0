"""Backends for the provider, grant store, configuration store, secret store
and workload orchestrator.

build_backends() wires the az/kubectl implementations for an environment.
"""

from dataclasses import dataclass
from typing import Optional

from config import EnvConfig
from providers.base import (
    ConfigStore,
    GrantStore,
    ResourceProvider,
    SecretStore,
    WorkloadOrchestrator,
)


@dataclass
class Backends:
    """External collaborators for one environment."""
    provider: ResourceProvider
    grants: GrantStore
    config_store: ConfigStore
    secret_store: Optional[SecretStore]
    orchestrator: WorkloadOrchestrator


def build_backends(config: EnvConfig) -> Backends:
    """Build CLI-backed collaborators from environment configuration."""
    from providers.azure import AzureCliProvider, AzureRoleAssignments
    from providers.appconfig import AppConfigStore, KeyVaultSecretStore
    from providers.kubernetes import ConfigMapStore, KubectlOrchestrator

    orchestrator = KubectlOrchestrator(config)
    if config.config_store_kind == 'configmap':
        config_store: ConfigStore = ConfigMapStore(orchestrator, config.configmap_name)
    else:
        config_store = AppConfigStore(config)

    secret_store = KeyVaultSecretStore(config) if config.secret_store else None

    return Backends(
        provider=AzureCliProvider(config),
        grants=AzureRoleAssignments(config),
        config_store=config_store,
        secret_store=secret_store,
        orchestrator=orchestrator,
    )
