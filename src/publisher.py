"""Configuration publishing: provisioning outputs into the configuration store.

Publishable outputs become flat configuration entries keyed by the naming
scheme the manifest renderer expects (see descriptor.config_key). Secret
outputs never take this path: SecretPublisher writes them to the secret store
and logs each write to the audit logger, optionally leaving a secret
reference in the configuration store.

Usage:
    platform-driver config publish -S <stack> -E <env> [--dry-run] [--json-output]
"""

import json
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from config import ConfigError
from descriptor import SENTINEL_KEY, SENTINEL_PRODUCER, STACK_PRODUCER, ResourceDescriptor, Stack
from provision_opr.state import ProvisionState
from providers.base import ConfigEntry, ConfigStore, SecretReference, SecretStore

logger = logging.getLogger(__name__)

# Secret writes are recorded here, names and producers only
audit_logger = logging.getLogger('platform_driver.audit')


def format_value(value: Any) -> str:
    """Render an output value as a configuration string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


@dataclass
class PublishResult:
    """Keys written or skipped by one publish pass."""
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)
    sentinel: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'written': self.written,
            'unchanged': self.unchanged,
            'secrets': self.secrets,
            'sentinel': self.sentinel,
        }


class SecretPublisher:
    """The only code path that writes secret values."""

    def __init__(self, store: SecretStore, config_store: Optional[ConfigStore] = None,
                 label: str = '', dry_run: bool = False):
        self.store = store
        self.config_store = config_store
        self.label = label
        self.dry_run = dry_run

    def publish(self, descriptor: ResourceDescriptor, values: Mapping[str, Any]) -> list[str]:
        """Write a descriptor's secret outputs.

        Returns:
            Secret names written
        """
        written = []
        for spec in descriptor.secrets:
            if spec.output not in values:
                continue
            self.write(spec.name, format_value(values[spec.output]), descriptor.name)
            written.append(spec.name)
            if spec.ref_key:
                self.write_reference(spec.ref_key, spec.name, descriptor.name)
        return written

    def write(self, name: str, value: str, producer: str) -> None:
        """Write one secret value and record it in the audit log."""
        if self.dry_run:
            logger.info(f"[dry-run] Would write secret '{name}' from '{producer}'")
            return
        self.store.set(name, value)
        audit_logger.info(f"secret '{name}' written by '{producer}' to {self.store.uri}")

    def write_reference(self, key: str, secret_name: str, producer: str) -> Optional[ConfigEntry]:
        """Store a pointer to a secret as a configuration entry."""
        if self.config_store is None:
            return None
        entry = ConfigEntry(
            key=key,
            value='',
            label=self.label,
            producer=producer,
            reference=SecretReference(self.store.uri, secret_name),
        )
        entry.value = entry.reference.uri
        if self.dry_run:
            logger.info(f"[dry-run] Would reference '{key}' -> {entry.value}")
            return entry
        self.config_store.set(entry)
        audit_logger.info(f"reference '{key}' -> secret '{secret_name}' written by '{producer}'")
        return entry


class ConfigurationPublisher:
    """Writes publishable outputs and static stack entries under one label.

    Each key is overwritten atomically by the store; keys whose current value
    already matches are not rewritten.
    """

    def __init__(self, stack: Stack, store: ConfigStore, label: str,
                 secret_publisher: Optional[SecretPublisher] = None,
                 dry_run: bool = False):
        self.stack = stack
        self.store = store
        self.label = label
        self.secret_publisher = secret_publisher
        self.dry_run = dry_run

    def entries_for(self, descriptor: ResourceDescriptor,
                    outputs: Mapping[str, Any]) -> list[ConfigEntry]:
        """Build configuration entries for a descriptor's publishable outputs.

        Raises:
            ConfigError: If a publishable output is secret or was not produced
        """
        entries = []
        for output, key in descriptor.publish.items():
            if output in descriptor.secret_outputs:
                raise ConfigError(
                    f"Refusing to publish secret output '{descriptor.name}.{output}' "
                    f"as configuration"
                )
            if output not in outputs:
                raise ConfigError(
                    f"Descriptor '{descriptor.name}' has no output '{output}' to publish"
                )
            entries.append(ConfigEntry(
                key=key,
                value=format_value(outputs[output]),
                label=self.label,
                producer=descriptor.name,
            ))
        return entries

    def static_entries(self) -> list[ConfigEntry]:
        return [
            ConfigEntry(key=k, value=v, label=self.label, producer=STACK_PRODUCER)
            for k, v in self.stack.config.items()
        ]

    def publish(self, state: ProvisionState) -> PublishResult:
        """Publish outputs of every completed descriptor plus static entries.

        Every entry is built and checked before the first write, so a bad
        declaration leaves the store untouched. A publish that changed
        anything ends by rewriting the sentinel key.

        Raises:
            ConfigError: If an output is missing, a secret output is routed to
                the configuration store, or secrets are declared with no
                secret store configured
            BackendError: If a store call fails
        """
        completed = [d for d in self.stack.descriptors
                     if state.get_node(d.name).status == 'completed']

        entries = []
        for d in completed:
            entries.extend(self.entries_for(d, state.outputs.get(d.name) or {}))
            if d.secrets and self.secret_publisher is None:
                raise ConfigError(
                    f"Descriptor '{d.name}' declares secret outputs but label "
                    f"'{self.label}' has no secret store configured"
                )
        if self.stack.secret_refs and self.secret_publisher is None:
            raise ConfigError(
                f"Stack '{self.stack.name}' declares secret references but label "
                f"'{self.label}' has no secret store configured"
            )
        entries.extend(self.static_entries())

        result = PublishResult()
        current = self.store.list(self.label)
        for entry in entries:
            self._write(entry, current, result)

        for d in completed:
            if d.secrets:
                result.secrets.extend(
                    self.secret_publisher.publish(d, state.secrets.get(d.name, {})))

        for key, secret_name in self.stack.secret_refs.items():
            ref = SecretReference(self.secret_publisher.store.uri, secret_name)
            if current.get(key) == ref.uri:
                result.unchanged.append(key)
                continue
            self.secret_publisher.write_reference(key, secret_name, STACK_PRODUCER)
            result.written.append(key)

        if result.written or result.secrets:
            result.sentinel = self._touch_sentinel()

        logger.info(f"Published {len(result.written)} key(s) to label '{self.label}' "
                    f"({len(result.unchanged)} unchanged, {len(result.secrets)} secret(s))")
        return result

    def _touch_sentinel(self) -> str:
        stamp = time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())
        if self.dry_run:
            logger.info(f"[dry-run] Would set {SENTINEL_KEY}={stamp}")
        else:
            self.store.set(ConfigEntry(key=SENTINEL_KEY, value=stamp, label=self.label,
                                       producer=SENTINEL_PRODUCER))
            logger.info(f"Set {SENTINEL_KEY}={stamp}")
        return stamp

    def _write(self, entry: ConfigEntry, current: Mapping[str, str],
               result: PublishResult) -> None:
        if current.get(entry.key) == entry.value:
            logger.debug(f"{entry.key} unchanged")
            result.unchanged.append(entry.key)
            return
        if self.dry_run:
            logger.info(f"[dry-run] Would set {entry.key}={entry.value}")
        else:
            self.store.set(entry)
            logger.info(f"Set {entry.key} (from '{entry.producer}')")
        result.written.append(entry.key)

    def unpublish(self, descriptor: ResourceDescriptor) -> list[str]:
        """Delete a descriptor's entries (teardown only)."""
        keys = list(descriptor.publish.values())
        keys.extend(s.ref_key for s in descriptor.secrets if s.ref_key)
        return self._delete(keys)

    def unpublish_static(self) -> list[str]:
        """Delete the stack's static entries, secret references and sentinel (teardown only)."""
        return self._delete(list(self.stack.config) + list(self.stack.secret_refs) + [SENTINEL_KEY])

    def _delete(self, keys: list[str]) -> list[str]:
        if not keys:
            return []
        current = self.store.list(self.label)
        deleted = []
        for key in keys:
            if key not in current:
                continue
            if self.dry_run:
                logger.info(f"[dry-run] Would delete {key}")
            else:
                self.store.delete(key, self.label)
                logger.info(f"Deleted {key}")
            deleted.append(key)
        return deleted


def build_publisher(stack: Stack, env_config, backends, dry_run: bool = False) -> ConfigurationPublisher:
    """Wire publishers to an environment's stores."""
    secret_publisher = None
    if backends.secret_store is not None:
        secret_publisher = SecretPublisher(
            backends.secret_store, backends.config_store, env_config.label, dry_run=dry_run)
    return ConfigurationPublisher(
        stack, backends.config_store, env_config.label,
        secret_publisher=secret_publisher, dry_run=dry_run,
    )


def publish_main(argv: list) -> int:
    """CLI entry point for 'config publish'.

    Reads current outputs of the stack's resources and publishes them.

    Returns:
        Exit code (0=success, 1=error)
    """
    import argparse

    from provision_opr.cli import add_target_args, load_stack_and_env, setup_logging
    from provision_opr.executor import ProvisioningEngine
    from provision_opr.graph import DependencyGraph
    from providers import build_backends
    from errors import DriverError

    parser = argparse.ArgumentParser(
        prog='platform-driver config publish',
        description='Publish stack outputs to the configuration store',
    )
    add_target_args(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)
    try:
        backends = build_backends(env_config)
        graph = DependencyGraph(stack)
        engine = ProvisioningEngine(stack=stack, graph=graph, config=env_config,
                                    provider=backends.provider)
        state = engine.observe()
        result = build_publisher(stack, env_config, backends, args.dry_run).publish(state)
    except (DriverError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({'verb': 'publish', 'success': True, **result.to_dict()}, indent=2))
    return 0


def config_main(argv: list) -> int:
    """CLI dispatcher for 'config' noun."""
    if not argv or argv[0].startswith('-'):
        print("Usage: platform-driver config <action> [options]")
        print()
        print("Actions:")
        print("  publish  Publish stack outputs to the configuration store")
        print()
        print("Run 'platform-driver config <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == 'publish':
        return publish_main(rest)

    print(f"Error: Unknown config action '{action}'")
    print("Available actions: publish")
    return 1
