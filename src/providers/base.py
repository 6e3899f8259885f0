"""Protocols and value types for external collaborators.

The engine, assigner, publisher and renderer only talk to these protocols;
concrete implementations shell out to the az and kubectl CLIs.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from descriptor import ResourceDescriptor


@dataclass
class ObservedResource:
    """A resource as read from the target environment.

    Attributes:
        kind: Descriptor kind
        name: Resource name
        resource_id: Stable provider identifier
        attributes: Comparable view of the resource's current settings
        outputs: Named outputs (hostname, principal id, resource id, ...)
        secret_outputs: Sensitive outputs; never published as configuration
    """
    kind: str
    name: str
    resource_id: str
    attributes: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    secret_outputs: dict = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class SecretReference:
    """Pointer to a secret store entry, safe to store as configuration."""
    store_uri: str
    name: str

    @property
    def uri(self) -> str:
        return f'{self.store_uri}secrets/{self.name}'


@dataclass
class ConfigEntry:
    """A published configuration fact.

    Attributes:
        key: Flat configuration key
        value: String value (the reference URI for secret references)
        label: Validity scope (deployment environment)
        producer: Descriptor that computed the value
        reference: Set when the entry points at the secret store
    """
    key: str
    value: str
    label: str
    producer: str = ''
    reference: Optional[SecretReference] = None


@dataclass
class ObjectResult:
    """Per-object outcome of a workload orchestrator apply."""
    object_name: str
    success: bool
    message: str = ''


@runtime_checkable
class ResourceProvider(Protocol):
    """Create/read/update/delete keyed by (kind, name, scope)."""

    def read(self, descriptor: ResourceDescriptor, scope: str) -> Optional[ObservedResource]:
        """Return the resource, or None when it does not exist."""

    def create(self, descriptor: ResourceDescriptor, attributes: dict,
               scope: str) -> ObservedResource:
        """Create the resource atomically and return it once provisioned."""

    def update(self, descriptor: ResourceDescriptor, observed: ObservedResource,
               changes: dict, scope: str) -> ObservedResource:
        """Apply only the drifted attributes in changes."""

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedResource,
               scope: str) -> None:
        """Delete the resource."""


@runtime_checkable
class GrantStore(Protocol):
    """Role assignments keyed by deterministic grant id."""

    def get_grant(self, grant_id: str, scope_id: str) -> Optional[dict]:
        """Return {'principal', 'role', 'scope'} for an existing grant, else None."""

    def create_grant(self, grant_id: str, principal_id: str, role: str, scope_id: str) -> None:
        """Create the grant. Raises GrantConflictError if the store refuses a duplicate."""


@runtime_checkable
class ConfigStore(Protocol):
    """Flat key/value store scoped by label."""

    def list(self, label: str) -> dict[str, str]:
        """All entries for a label."""

    def get(self, key: str, label: str) -> Optional[str]:
        """One entry, or None."""

    def set(self, entry: ConfigEntry) -> None:
        """Atomically overwrite one key."""

    def delete(self, key: str, label: str) -> None:
        """Remove one key."""


@runtime_checkable
class SecretStore(Protocol):
    """Access-controlled secret store."""

    uri: str

    def exists(self, name: str) -> bool:
        """True if the secret exists."""

    def set(self, name: str, value: str) -> None:
        """Write a secret value."""


@runtime_checkable
class WorkloadOrchestrator(Protocol):
    """Accepts batches of fully rendered manifests."""

    def apply(self, manifests: list[str]) -> list[ObjectResult]:
        """Apply all manifests; one result per object."""

    def build(self, directory: Path) -> str:
        """Build a kustomize directory into a multi-document manifest."""
