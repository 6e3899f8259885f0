"""Post-deployment tasks: secret seeding, private endpoint approval and image import.

Generated secrets (session keys, signing keys) are random hex values created
once; later runs leave them alone unless forced. Placeholder secrets hold a
fixed value an operator replaces after deployment.

Ingress private endpoints land on the private link service as Pending
connections and must be approved before traffic flows.

Release images are copied from a vendor registry into the environment's own
registry; a versions file lists one repository:tag per line.

Usage:
    platform-driver post-deploy seed-secrets -S <stack> -E <env> [--force]
    platform-driver post-deploy approve-connections -E <env> [--wait 600]
    platform-driver post-deploy import-images -E <env> --versions-file VERSIONS.txt
"""

import json
import logging
import os
import secrets
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from common import poll_until
from config import ConfigError
from descriptor import Stack
from errors import DriverError
from publisher import SecretPublisher

logger = logging.getLogger(__name__)

APPROVAL_DESCRIPTION = 'Approved by platform-driver'

SOURCE_USER_ENV = 'SOURCE_REGISTRY_USERNAME'
SOURCE_PASSWORD_ENV = 'SOURCE_REGISTRY_PASSWORD'

# Error substring -> what to check, most specific first
IMPORT_HINTS = (
    (('InvalidImportImageParameter', 'SourceImage'),
     "The image is missing from the source registry or the credentials cannot read it"),
    (('Unauthorized', 'authentication', '401'),
     "The source registry credentials are invalid or expired"),
    (('Forbidden', '403'),
     "The signed-in principal needs the AcrPush role on the target registry"),
)


@dataclass
class SeedResult:
    """Secrets written or left alone by one seeding pass."""
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {'created': self.created, 'skipped': self.skipped}


def generate_secret(length: int) -> str:
    """Random hex string of the given length."""
    return secrets.token_hex((length + 1) // 2)[:length]


def seed_secrets(stack: Stack, publisher: SecretPublisher, force: bool = False) -> SeedResult:
    """Create the stack's generated and placeholder secrets.

    Existing secrets are skipped unless force is set.
    """
    result = SeedResult()
    for spec in stack.generated_secrets:
        if not force and publisher.store.exists(spec.name):
            logger.info(f"Secret '{spec.name}' exists, skipping")
            result.skipped.append(spec.name)
            continue
        value = spec.placeholder if spec.placeholder is not None else generate_secret(spec.length)
        publisher.write(spec.name, value, 'post-deploy')
        kind = 'placeholder' if spec.placeholder is not None else f'{spec.length}-char generated'
        logger.info(f"Seeded {kind} secret '{spec.name}'"
                    + (f" ({spec.description})" if spec.description else ''))
        result.created.append(spec.name)
    return result


def approve_connections(link_service, service: str, wait: float = 0,
                        interval: float = 15) -> list[str]:
    """Approve Pending private endpoint connections on a private link service.

    With wait > 0, polls until at least one Pending connection appears.

    Returns:
        Names of approved connections
    """
    def pending() -> Optional[list[str]]:
        names = link_service.pending_connections(service)
        return names or None

    if wait > 0:
        names = poll_until(pending, f"pending connections on {service}",
                           timeout=wait, interval=interval) or []
    else:
        names = link_service.pending_connections(service)

    if not names:
        logger.info(f"No pending connections on '{service}'")
        return []

    for name in names:
        link_service.approve(service, name, APPROVAL_DESCRIPTION)
        logger.info(f"Approved connection '{name}' on '{service}'")
    return names


@dataclass
class ImportResult:
    """Outcome of one image import pass."""
    imported: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {'imported': self.imported, 'failed': self.failed}


def read_versions_file(path: Path) -> list[str]:
    """Images listed in a versions file, one repository:tag per line.

    Blank lines and lines starting with '#' are ignored.

    Raises:
        ConfigError: If the file is missing or lists no images
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Versions file not found: {path}")
    images = []
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            images.append(line)
    if not images:
        raise ConfigError(f"No images listed in {path}")
    return images


def import_hint(errors: list[str]) -> Optional[str]:
    """Troubleshooting hint for the first known failure pattern."""
    text = '\n'.join(errors).lower()
    for markers, hint in IMPORT_HINTS:
        if any(m.lower() in text for m in markers):
            return hint
    return None


def import_images(registry, images: list[str], source_registry: str,
                  username: str = '', password: str = '',
                  max_workers: int = 8) -> ImportResult:
    """Import every image in parallel; one failure does not stop the others.

    Returns:
        ImportResult with images in versions-file order
    """
    def one(image: str) -> Optional[str]:
        try:
            registry.import_image(image, source_registry, username, password)
        except DriverError as e:
            return str(e)
        return None

    result = ImportResult()
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(images))),
                            thread_name_prefix='import') as pool:
        outcomes = list(pool.map(one, images))

    for image, error in zip(images, outcomes):
        if error is None:
            logger.info(f"Imported {image}")
            result.imported.append(image)
        else:
            logger.error(f"Import of {image} failed: {error}")
            result.failed[image] = error
    return result


def seed_secrets_main(argv: list) -> int:
    """CLI entry point for 'post-deploy seed-secrets'."""
    import argparse

    from provision_opr.cli import add_target_args, load_stack_and_env, run_preflight, setup_logging
    from providers import build_backends

    parser = argparse.ArgumentParser(
        prog='platform-driver post-deploy seed-secrets',
        description='Seed generated and placeholder secrets',
    )
    add_target_args(parser)
    parser.add_argument('--force', '-f', action='store_true', help='Overwrite existing secrets')
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)

    class _Requirements:
        requires_secret_store = True

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    try:
        backends = build_backends(env_config)
        if backends.secret_store is None:
            print(f"Error: Environment '{env_config.name}' has no secret store\n"
                  f"  Add 'secret_store' to {env_config.config_file}", file=sys.stderr)
            return 1
        publisher = SecretPublisher(backends.secret_store, dry_run=args.dry_run)
        result = seed_secrets(stack, publisher, force=args.force)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({'verb': 'seed-secrets', 'success': True, **result.to_dict()}, indent=2))
    return 0


def approve_connections_main(argv: list) -> int:
    """CLI entry point for 'post-deploy approve-connections'."""
    import argparse

    from provision_opr.cli import add_env_args, load_env, run_preflight, setup_logging
    from providers.azure import PrivateLinkService

    parser = argparse.ArgumentParser(
        prog='platform-driver post-deploy approve-connections',
        description='Approve pending private endpoint connections',
    )
    add_env_args(parser)
    parser.add_argument('--service', help='Private link service name (default: from env)')
    parser.add_argument('--wait', type=float, default=0,
                        help='Seconds to wait for a pending connection to appear')
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    env_config = load_env(args)
    if args.service:
        env_config.private_link_service = args.service

    class _Requirements:
        requires_provider = True
        requires_private_link = True

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    if args.dry_run:
        logger.info(f"[dry-run] Would approve pending connections on "
                    f"'{env_config.private_link_service}'")
        return 0

    try:
        approved = approve_connections(
            PrivateLinkService(env_config), env_config.private_link_service, wait=args.wait)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({'verb': 'approve-connections', 'success': True,
                          'approved': approved}, indent=2))
    return 0


def import_images_main(argv: list) -> int:
    """CLI entry point for 'post-deploy import-images'."""
    import argparse

    from provision_opr.cli import add_env_args, load_env, run_preflight, setup_logging
    from providers.azure import ContainerRegistry

    parser = argparse.ArgumentParser(
        prog='platform-driver post-deploy import-images',
        description='Import release images into the environment registry',
    )
    add_env_args(parser)
    parser.add_argument('--versions-file', type=Path, default=Path('VERSIONS.txt'),
                        help='File listing one repository:tag per line (default: VERSIONS.txt)')
    parser.add_argument('--registry', help='Target registry name (default: from env)')
    parser.add_argument('--source-registry', help='Source login server (default: from env)')
    parser.add_argument('--source-user', default=os.environ.get(SOURCE_USER_ENV, ''),
                        help=f'Source registry username (default: ${SOURCE_USER_ENV})')
    parser.add_argument('--source-password', default=os.environ.get(SOURCE_PASSWORD_ENV, ''),
                        help=f'Source registry password (default: ${SOURCE_PASSWORD_ENV})')
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    env_config = load_env(args)
    if args.registry:
        env_config.container_registry = args.registry
    if args.source_registry:
        env_config.source_registry = args.source_registry

    try:
        images = read_versions_file(args.versions_file)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if not env_config.source_registry:
        print(f"Error: No source registry for environment '{env_config.name}'\n"
              f"  Add 'source_registry' to {env_config.config_file} or pass --source-registry",
              file=sys.stderr)
        return 1
    if args.source_user and not args.source_password:
        print(f"Error: --source-user needs a password; pass --source-password "
              f"or set {SOURCE_PASSWORD_ENV}", file=sys.stderr)
        return 1

    class _Requirements:
        requires_registry = True

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    if args.dry_run:
        creds = ' --username ****** --password ******' if args.source_user else ''
        for image in images:
            logger.info(f"[dry-run] az acr import --name {env_config.container_registry} "
                        f"--source {env_config.source_registry}/{image} --image {image}{creds}")
        return 0

    registry = ContainerRegistry(env_config)
    try:
        if not registry.exists():
            print(f"Error: Registry '{registry.name}' not found\n"
                  f"  Provision the stack before importing images", file=sys.stderr)
            return 1
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.info(f"Importing {len(images)} image(s) from {env_config.source_registry} "
                f"into {registry.name}")
    result = import_images(registry, images, env_config.source_registry,
                           args.source_user, args.source_password)

    if args.json_output:
        print(json.dumps({'verb': 'import-images', 'success': result.success,
                          **result.to_dict()}, indent=2))
    elif result.failed:
        print(f"Error: {len(result.failed)} of {len(images)} image(s) failed to import",
              file=sys.stderr)
        for image, error in result.failed.items():
            print(f"  ✗ {image}: {error.splitlines()[0] if error else ''}", file=sys.stderr)
        hint = import_hint(list(result.failed.values()))
        if hint:
            print(f"  {hint}", file=sys.stderr)
    return 0 if result.success else 1


def post_deploy_main(argv: list) -> int:
    """CLI dispatcher for 'post-deploy' noun."""
    if not argv or argv[0].startswith('-'):
        print("Usage: platform-driver post-deploy <action> [options]")
        print()
        print("Actions:")
        print("  seed-secrets         Seed generated and placeholder secrets")
        print("  approve-connections  Approve pending private endpoint connections")
        print("  import-images        Import release images into the environment registry")
        print()
        print("Run 'platform-driver post-deploy <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == 'seed-secrets':
        return seed_secrets_main(rest)
    if action == 'approve-connections':
        return approve_connections_main(rest)
    if action == 'import-images':
        return import_images_main(rest)

    print(f"Error: Unknown post-deploy action '{action}'")
    print("Available actions: seed-secrets, approve-connections, import-images")
    return 1
