"""Azure backends built on the az CLI.

Resources are addressed by (resource type, name) inside the environment's
resource group. Descriptor kinds map to ARM resource types; a descriptor's
``type`` field overrides the mapping.
"""

import json
import logging
from typing import Any, Optional

from common import poll_until, run_command, run_json
from config import EnvConfig
from descriptor import ResourceDescriptor
from errors import BackendError, GrantConflictError
from providers.base import ObservedResource

logger = logging.getLogger(__name__)

KIND_TYPES = {
    'network': 'Microsoft.Network/virtualNetworks',
    'identity': 'Microsoft.ManagedIdentity/userAssignedIdentities',
    'cache': 'Microsoft.Cache/redis',
    'database': 'Microsoft.DBforMySQL/flexibleServers',
    'cluster': 'Microsoft.ContainerService/managedClusters',
    'registry': 'Microsoft.ContainerRegistry/registries',
    'keyvault': 'Microsoft.KeyVault/vaults',
    'appconfig': 'Microsoft.AppConfiguration/configurationStores',
    'storage': 'Microsoft.Storage/storageAccounts',
    'ingress': 'Microsoft.Cdn/profiles',
    'private_link_service': 'Microsoft.Network/privateLinkServices',
}

# ARM envelope fields; every other attribute lives under 'properties'
TOP_LEVEL_FIELDS = ('location', 'tags', 'sku', 'kind', 'identity', 'zones')

NOT_FOUND_MARKERS = ('ResourceNotFound', 'ResourceGroupNotFound', 'was not found', 'NotFound')


def resource_type(descriptor: ResourceDescriptor) -> str:
    """ARM resource type for a descriptor.

    Raises:
        BackendError: If the kind has no known type and none was declared
    """
    if descriptor.type:
        return descriptor.type
    try:
        return KIND_TYPES[descriptor.kind]
    except KeyError:
        raise BackendError(
            f"resolve type of '{descriptor.name}'",
            f"unknown kind '{descriptor.kind}'; set 'type' on the descriptor",
        )


def _is_not_found(err: str) -> bool:
    return any(marker in err for marker in NOT_FOUND_MARKERS)


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def to_arm_body(attributes: dict) -> dict:
    """Split flat descriptor attributes into an ARM resource body."""
    body: dict[str, Any] = {'properties': {}}
    for key, value in attributes.items():
        if key in TOP_LEVEL_FIELDS:
            body[key] = value
        else:
            body['properties'][key] = value
    return body


def attributes_view(resource: dict) -> dict:
    """Flatten an ARM resource into the shape descriptors declare."""
    view = dict(resource.get('properties') or {})
    for key in TOP_LEVEL_FIELDS:
        if resource.get(key) is not None:
            view[key] = resource[key]
    if isinstance(view.get('location'), str):
        view['location'] = view['location'].replace(' ', '').lower()
    return view


def extract_outputs(kind: str, resource: dict) -> dict:
    """Named outputs of an ARM resource.

    Scalar properties are exposed under their ARM names, plus per-kind
    aliases for values the platform consumes (host, subnetId, ...).
    """
    props = resource.get('properties') or {}
    outputs: dict[str, Any] = {
        'id': resource.get('id'),
        'name': resource.get('name'),
    }
    for key, value in props.items():
        if isinstance(value, (str, int, float, bool)):
            outputs[key] = value

    principal = _dig(resource, 'identity', 'principalId')
    if principal and 'principalId' not in outputs:
        outputs['principalId'] = principal

    if kind == 'network':
        subnets = props.get('subnets') or []
        if subnets:
            outputs['subnetId'] = subnets[0].get('id')
            for subnet in subnets:
                outputs[f"subnet_{subnet.get('name')}"] = subnet.get('id')
    elif kind == 'cache':
        outputs['host'] = props.get('hostName')
        outputs['port'] = props.get('sslPort')
    elif kind == 'database':
        outputs['host'] = props.get('fullyQualifiedDomainName')
    elif kind == 'cluster':
        outputs['oidcIssuerUrl'] = _dig(props, 'oidcIssuerProfile', 'issuerURL')
        outputs['kubeletPrincipalId'] = _dig(
            props, 'identityProfile', 'kubeletidentity', 'objectId')
    elif kind == 'storage':
        outputs['primaryBlobEndpoint'] = _dig(props, 'primaryEndpoints', 'blob')

    return {k: v for k, v in outputs.items() if v is not None}


class AzureCliProvider:
    """ResourceProvider backed by `az resource`."""

    def __init__(self, config: EnvConfig, poll_interval: float = 10):
        self.config = config
        self.poll_interval = poll_interval

    def _az(self, *args: str) -> list[str]:
        cmd = ['az', *args, '-o', 'json', '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def _show(self, descriptor: ResourceDescriptor, scope: str) -> Optional[dict]:
        rc, out, err = run_command(self._az(
            'resource', 'show',
            '--resource-group', scope,
            '--name', descriptor.name,
            '--resource-type', resource_type(descriptor),
        ), timeout=120)
        if rc != 0:
            if _is_not_found(err):
                return None
            raise BackendError(f"az resource show {descriptor.name}", err or out)
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise BackendError(f"az resource show {descriptor.name}", f"invalid JSON output: {e}")

    def _observe(self, descriptor: ResourceDescriptor, resource: dict) -> ObservedResource:
        secret_outputs = {}
        if descriptor.secrets:
            secret_outputs = self._list_keys(resource['id'])
        return ObservedResource(
            kind=descriptor.kind,
            name=descriptor.name,
            resource_id=resource['id'],
            attributes=attributes_view(resource),
            outputs=extract_outputs(descriptor.kind, resource),
            secret_outputs=secret_outputs,
        )

    def _list_keys(self, resource_id: str) -> dict:
        keys = run_json(self._az(
            'resource', 'invoke-action', '--action', 'listKeys', '--ids', resource_id,
        ), f"list keys of {resource_id}", timeout=120) or {}
        secrets = {k: v for k, v in keys.items() if isinstance(v, str)}
        # Storage-style responses: {"keys": [{"keyName": ..., "value": ...}]}
        for i, item in enumerate(keys.get('keys') or []):
            name = 'primaryKey' if i == 0 else item.get('keyName', f'key{i}')
            secrets[name] = item.get('value')
        return secrets

    def _wait_provisioned(self, descriptor: ResourceDescriptor, scope: str) -> dict:
        def check() -> Optional[dict]:
            resource = self._show(descriptor, scope)
            if resource is None:
                return None
            status = _dig(resource, 'properties', 'provisioningState') or 'Succeeded'
            if status in ('Failed', 'Canceled'):
                raise BackendError(
                    f"provision {descriptor.name}", f"provisioningState is {status}")
            return resource if status == 'Succeeded' else None

        resource = poll_until(
            check,
            f"{descriptor.kind} '{descriptor.name}' provisioning",
            timeout=self.config.provision_timeout,
            interval=self.poll_interval,
        )
        if resource is None:
            raise BackendError(
                f"provision {descriptor.name}",
                f"not provisioned after {self.config.provision_timeout}s",
            )
        return resource

    def read(self, descriptor: ResourceDescriptor, scope: str) -> Optional[ObservedResource]:
        resource = self._show(descriptor, scope)
        if resource is None:
            return None
        return self._observe(descriptor, resource)

    def create(self, descriptor: ResourceDescriptor, attributes: dict,
               scope: str) -> ObservedResource:
        body = to_arm_body(attributes)
        body.setdefault('location', self.config.location)
        run_json(self._az(
            'resource', 'create',
            '--resource-group', scope,
            '--name', descriptor.name,
            '--resource-type', resource_type(descriptor),
            '--is-full-object',
            '--properties', json.dumps(body),
        ), f"az resource create {descriptor.name}", timeout=self.config.provision_timeout)
        return self._observe(descriptor, self._wait_provisioned(descriptor, scope))

    def update(self, descriptor: ResourceDescriptor, observed: ObservedResource,
               changes: dict, scope: str) -> ObservedResource:
        args = []
        for key, value in changes.items():
            path = key if key in TOP_LEVEL_FIELDS else f'properties.{key}'
            args.extend(['--set', f'{path}={json.dumps(value)}'])
        run_json(self._az(
            'resource', 'update', '--ids', observed.resource_id, *args,
        ), f"az resource update {descriptor.name}", timeout=self.config.provision_timeout)
        return self._observe(descriptor, self._wait_provisioned(descriptor, scope))

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedResource,
               scope: str) -> None:
        rc, out, err = run_command(self._az(
            'resource', 'delete', '--ids', observed.resource_id,
        ), timeout=self.config.provision_timeout)
        if rc != 0 and not _is_not_found(err):
            raise BackendError(f"az resource delete {descriptor.name}", err or out)


class AzureRoleAssignments:
    """GrantStore backed by `az role assignment`; the grant id is the assignment name."""

    def __init__(self, config: EnvConfig):
        self.config = config

    def _az(self, *args: str) -> list[str]:
        cmd = ['az', 'role', 'assignment', *args, '-o', 'json', '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def get_grant(self, grant_id: str, scope_id: str) -> Optional[dict]:
        found = run_json(self._az(
            'list', '--scope', scope_id, '--query', f"[?name=='{grant_id}']",
        ), f"read role assignment {grant_id}", timeout=120) or []
        if not found:
            return None
        item = found[0]
        return {
            'principal': item.get('principalId'),
            'role': item.get('roleDefinitionName'),
            'scope': item.get('scope'),
        }

    def create_grant(self, grant_id: str, principal_id: str, role: str, scope_id: str) -> None:
        rc, out, err = run_command(self._az(
            'create',
            '--name', grant_id,
            '--assignee-object-id', principal_id,
            '--assignee-principal-type', 'ServicePrincipal',
            '--role', role,
            '--scope', scope_id,
        ), timeout=120)
        if rc == 0:
            return
        if 'RoleAssignmentExists' in err:
            raise GrantConflictError(
                grant_id, "the principal already holds this role on the scope under another id")
        raise BackendError(f"create role assignment {grant_id}", err or out)


class PrivateLinkService:
    """Approves pending private endpoint connections on a private link service."""

    def __init__(self, config: EnvConfig):
        self.config = config

    def _az(self, *args: str) -> list[str]:
        cmd = ['az', 'network', 'private-link-service', *args,
               '--resource-group', self.config.resource_group, '-o', 'json', '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def pending_connections(self, service: str) -> list[str]:
        names = run_json(self._az(
            'show', '--name', service,
            '--query',
            "privateEndpointConnections[?privateLinkServiceConnectionState.status=='Pending'].name",
        ), f"list connections of {service}", timeout=120)
        return list(names or [])

    def approve(self, service: str, connection: str, description: str) -> None:
        run_json(self._az(
            'connection', 'update',
            '--service-name', service,
            '--name', connection,
            '--connection-status', 'Approved',
            '--description', description,
        ), f"approve connection {connection}", timeout=120)


class ContainerRegistry:
    """Imports images into an Azure Container Registry with `az acr import`."""

    def __init__(self, config: EnvConfig):
        self.config = config
        self.name = config.container_registry

    def _az(self, *args: str) -> list[str]:
        cmd = ['az', 'acr', *args, '--name', self.name, '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def exists(self) -> bool:
        rc, out, err = run_command(self._az('show', '-o', 'json'), timeout=120)
        if rc == 0:
            return True
        if _is_not_found(err):
            return False
        raise BackendError(f"az acr show {self.name}", err or out)

    def import_image(self, image: str, source_registry: str,
                     username: str = '', password: str = '') -> None:
        """Copy source_registry/image to the same repository and tag, overwriting."""
        args = ['import', '--source', f'{source_registry}/{image}', '--image', image, '--force']
        if username:
            args.extend(['--username', username, '--password', password])
        rc, out, err = run_command(self._az(*args), timeout=1800,
                                   redact=[password] if password else None)
        if rc != 0:
            raise BackendError(f"az acr import {image}", err or out)
