"""Resource descriptors and stack loading.

A stack is an ordered set of resource descriptors. Descriptor attributes may
reference outputs of other descriptors, either textually inside a string:

    subnetId: ${network.subnetId}
    connection: "redis://${cache.host}:6380"

or structurally:

    subnetId: {ref: network.subnetId}

A string that is exactly one reference resolves to the raw output value;
embedded references are interpolated as strings.

Stacks are loaded from site-config/stacks/*.yaml, a file path, or inline JSON.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError, get_site_config_dir

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r'\$\{([A-Za-z0-9_-]+)\.([A-Za-z0-9_-]+)\}')

# Producer name used for static configuration entries declared by the stack
STACK_PRODUCER = 'stack'

# Key rewritten after every publish that changed something; watchers reload on it
SENTINEL_KEY = 'sentinel'
SENTINEL_PRODUCER = 'configuration refresh'


@dataclass(frozen=True)
class Reference:
    """A reference to another descriptor's output."""
    producer: str
    output: str

    @classmethod
    def parse(cls, value: str) -> 'Reference':
        """Parse 'producer.output' (no ${} wrapper)."""
        producer, sep, output = value.partition('.')
        if not sep or not producer or not output:
            raise ConfigError(f"Invalid reference '{value}': expected 'descriptor.output'")
        return cls(producer=producer, output=output)

    def __str__(self) -> str:
        return f'${{{self.producer}.{self.output}}}'


def _is_structural_ref(value: Any) -> bool:
    return isinstance(value, dict) and set(value.keys()) == {'ref'}


def find_references(value: Any) -> list[Reference]:
    """Collect references in an attribute value, in order of appearance."""
    refs: list[Reference] = []
    if isinstance(value, str):
        for m in REFERENCE_PATTERN.finditer(value):
            refs.append(Reference(m.group(1), m.group(2)))
    elif _is_structural_ref(value):
        refs.append(Reference.parse(value['ref']))
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            refs.extend(find_references(item))
    return refs


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute references in an attribute value using lookup."""
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(Reference(whole.group(1), whole.group(2)))
        return REFERENCE_PATTERN.sub(
            lambda m: str(lookup(Reference(m.group(1), m.group(2)))), value)
    if _is_structural_ref(value):
        return lookup(Reference.parse(value['ref']))
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


def config_key(descriptor_name: str, output: str) -> str:
    """Default configuration key for a published output.

    camelCase and kebab-case parts become upper snake case:
    ('cache', 'host') -> 'CACHE_HOST', ('identity', 'clientId') -> 'IDENTITY_CLIENT_ID'.
    """
    return f'{_upper_snake(descriptor_name)}_{_upper_snake(output)}'


def _upper_snake(value: str) -> str:
    value = re.sub(r'(?<=[a-z0-9])(?=[A-Z])', '_', value)
    return re.sub(r'[^A-Za-z0-9]+', '_', value).strip('_').upper()


@dataclass
class GrantSpec:
    """Access required by a principal on the declaring descriptor (the scope)."""
    principal: str
    role: str

    @classmethod
    def from_dict(cls, data: dict) -> 'GrantSpec':
        if 'principal' not in data or 'role' not in data:
            raise ConfigError(f"Access entry requires 'principal' and 'role': {data}")
        return cls(principal=data['principal'], role=data['role'])


@dataclass
class SecretSpec:
    """An output that must only ever be written to the secret store.

    Attributes:
        output: Output name on the producing descriptor
        name: Secret name in the secret store
        ref_key: Optional configuration key receiving a secret reference
    """
    output: str
    name: str
    ref_key: Optional[str] = None


@dataclass
class ResourceDescriptor:
    """A typed, named unit of infrastructure.

    Attributes:
        kind: Resource kind (network, identity, cache, database, cluster, ingress, ...)
        name: Logical name, unique within the stack
        attributes: Ordered input parameters (values or references)
        type: Provider resource type override
        publish: Output name -> configuration key for publishable outputs
        secrets: Outputs routed to the secret store
        access: Grants scoped to this descriptor
        depends_on: Ordering-only dependencies
    """
    kind: str
    name: str
    attributes: dict = field(default_factory=dict)
    type: Optional[str] = None
    publish: dict[str, str] = field(default_factory=dict)
    secrets: list[SecretSpec] = field(default_factory=list)
    access: list[GrantSpec] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.kind, self.name)

    def references(self) -> list[Reference]:
        """References made by this descriptor's attributes."""
        return find_references(self.attributes)

    @property
    def secret_outputs(self) -> set[str]:
        return {s.output for s in self.secrets}

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceDescriptor':
        """Create ResourceDescriptor from dictionary."""
        name = data['name']

        publish_data = data.get('publish') or {}
        if isinstance(publish_data, list):
            publish = {out: config_key(name, out) for out in publish_data}
        elif isinstance(publish_data, dict):
            publish = {out: key or config_key(name, out) for out, key in publish_data.items()}
        else:
            raise ConfigError(f"Descriptor '{name}': publish must be a list or mapping")

        secrets = []
        for output, spec in (data.get('secrets') or {}).items():
            if isinstance(spec, str):
                secrets.append(SecretSpec(output=output, name=spec))
            else:
                secrets.append(SecretSpec(
                    output=output,
                    name=spec['name'],
                    ref_key=spec.get('ref_key'),
                ))

        return cls(
            kind=data['kind'],
            name=name,
            attributes=dict(data.get('attributes') or {}),
            type=data.get('type'),
            publish=publish,
            secrets=secrets,
            access=[GrantSpec.from_dict(a) for a in data.get('access') or []],
            depends_on=list(data.get('depends_on') or []),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'kind': self.kind,
            'name': self.name,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.type is not None:
            d['type'] = self.type
        if self.publish:
            d['publish'] = dict(self.publish)
        if self.secrets:
            d['secrets'] = {
                s.output: ({'name': s.name, 'ref_key': s.ref_key} if s.ref_key else s.name)
                for s in self.secrets
            }
        if self.access:
            d['access'] = [{'principal': g.principal, 'role': g.role} for g in self.access]
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class GeneratedSecret:
    """A secret created by post-deploy seeding rather than by a resource.

    Attributes:
        name: Secret name in the secret store
        description: Shown in logs
        length: Hex characters for auto-generated values
        placeholder: Fixed value for secrets an operator fills in later
    """
    name: str
    description: str = ''
    length: int = 64
    placeholder: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'GeneratedSecret':
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            length=int(data.get('length', 64)),
            placeholder=data.get('placeholder'),
        )


@dataclass
class StackSettings:
    """Optional per-stack execution settings.

    None means "use the environment's value".
    """
    max_parallel: Optional[int] = None
    retry_attempts: Optional[int] = None
    retry_base_delay: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StackSettings':
        if not data:
            return cls()
        return cls(
            max_parallel=data.get('max_parallel'),
            retry_attempts=data.get('retry_attempts'),
            retry_base_delay=data.get('retry_base_delay'),
        )


@dataclass
class Stack:
    """A named set of resource descriptors.

    Attributes:
        name: Stack name
        descriptors: Descriptors in declaration order
        description: Optional description
        settings: Execution settings
        config: Static configuration entries (key -> value)
        secret_refs: Static secret references (config key -> secret name)
        generated_secrets: Secrets seeded after provisioning
        source_path: Where the stack was loaded from
    """
    name: str
    descriptors: list[ResourceDescriptor]
    description: str = ''
    settings: StackSettings = field(default_factory=StackSettings)
    config: dict[str, str] = field(default_factory=dict)
    secret_refs: dict[str, str] = field(default_factory=dict)
    generated_secrets: list[GeneratedSecret] = field(default_factory=list)
    source_path: Optional[Path] = None

    def get(self, name: str) -> ResourceDescriptor:
        """Get a descriptor by name.

        Raises:
            KeyError: If no descriptor has that name
        """
        for d in self.descriptors:
            if d.name == name:
                return d
        raise KeyError(name)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.descriptors]

    def to_dict(self) -> dict:
        result: dict[str, Any] = {
            'name': self.name,
            'description': self.description,
            'descriptors': [d.to_dict() for d in self.descriptors],
        }
        if self.config:
            result['config'] = dict(self.config)
        if self.secret_refs:
            result['secret_refs'] = dict(self.secret_refs)
        if self.generated_secrets:
            result['generated_secrets'] = [
                {k: v for k, v in vars(s).items() if v not in (None, '')}
                for s in self.generated_secrets
            ]
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Raises:
            ConfigError: If the stack is invalid
        """
        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")
        if not data.get('descriptors'):
            raise ConfigError(f"Stack '{data['name']}' must have at least one descriptor")

        descriptors = []
        for i, d in enumerate(data['descriptors']):
            if 'name' not in d:
                raise ConfigError(f"Descriptor {i} missing required field: name")
            if 'kind' not in d:
                raise ConfigError(f"Descriptor {i} ({d['name']}) missing required field: kind")
            descriptors.append(ResourceDescriptor.from_dict(d))

        stack = cls(
            name=data['name'],
            descriptors=descriptors,
            description=data.get('description', ''),
            settings=StackSettings.from_dict(data.get('settings')),
            config={k: str(v) for k, v in (data.get('config') or {}).items()},
            secret_refs=dict(data.get('secret_refs') or {}),
            generated_secrets=[GeneratedSecret.from_dict(s)
                               for s in data.get('generated_secrets') or []],
            source_path=source_path,
        )
        _validate_stack(stack)
        return stack

    @classmethod
    def from_json(cls, json_str: str) -> 'Stack':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        return cls.from_dict(data)


def _validate_stack(stack: Stack) -> None:
    """Validate cross-descriptor declarations.

    Checks for:
    - Duplicate descriptor names
    - References, depends_on and grant principals naming unknown descriptors
    - References to outputs the producer routes to the secret store
    - Outputs declared both publishable and secret
    - Configuration keys produced more than once

    Cycles are detected by the graph builder.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for name in stack.names:
        if name in seen:
            raise ConfigError(f"Duplicate descriptor name: '{name}'")
        seen.add(name)

    key_owner: dict[str, str] = {SENTINEL_KEY: SENTINEL_PRODUCER}
    for key in list(stack.config) + list(stack.secret_refs):
        _claim_key(key_owner, key, STACK_PRODUCER)

    for d in stack.descriptors:
        for ref in d.references():
            if ref.producer not in seen:
                raise ConfigError(
                    f"Descriptor '{d.name}' references unknown descriptor '{ref.producer}'"
                )
            if ref.output in stack.get(ref.producer).secret_outputs:
                raise ConfigError(
                    f"Descriptor '{d.name}' references secret output "
                    f"'{ref.producer}.{ref.output}'; secret outputs are only written "
                    f"to the secret store"
                )
        for dep in d.depends_on:
            if dep not in seen:
                raise ConfigError(f"Descriptor '{d.name}' depends on unknown descriptor '{dep}'")
        for grant in d.access:
            if grant.principal not in seen:
                raise ConfigError(
                    f"Descriptor '{d.name}' grants '{grant.role}' to unknown principal "
                    f"'{grant.principal}'"
                )

        leaked = set(d.publish) & d.secret_outputs
        if leaked:
            raise ConfigError(
                f"Descriptor '{d.name}' publishes secret output(s) {sorted(leaked)}; "
                f"secrets may only be written to the secret store"
            )

        for key in d.publish.values():
            _claim_key(key_owner, key, d.name)
        for spec in d.secrets:
            if spec.ref_key:
                _claim_key(key_owner, spec.ref_key, d.name)


def _claim_key(owners: dict[str, str], key: str, producer: str) -> None:
    if key in owners:
        raise ConfigError(
            f"Configuration key '{key}' is produced by both '{owners[key]}' and '{producer}'"
        )
    owners[key] = producer


class StackLoader:
    """Loads stacks from site-config/stacks/ directory."""

    def __init__(self, site_config_path: Optional[str] = None):
        if site_config_path:
            self.site_config_dir = Path(site_config_path)
        else:
            self.site_config_dir = get_site_config_dir()

        self.stacks_dir = self.site_config_dir / 'stacks'

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted(f.stem for f in self.stacks_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str) -> Stack:
        """Load stack by name.

        Raises:
            ConfigError: If stack not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load stack from specific file path."""
        return load_stack_file(path)


def load_stack_file(path: Path) -> Stack:
    """Load stack from a YAML file.

    Raises:
        ConfigError: If file not found or invalid
    """
    if not path.exists():
        raise ConfigError(f"Stack file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in stack {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Stack {path} must be a YAML object (dict)")

    return Stack.from_dict(data, source_path=path)


def load_stack(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Stack:
    """Load a stack from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from site-config/stacks/

    Raises:
        ConfigError: If no source given, or the stack is not found or invalid
    """
    if json_str:
        return Stack.from_json(json_str)
    if file_path:
        return load_stack_file(Path(file_path))
    if name:
        return StackLoader().load(name)
    raise ConfigError("No stack specified")