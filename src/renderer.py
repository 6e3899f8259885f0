"""Manifest rendering: placeholder substitution against the configuration store.

Templates carry tokens of the form REPLACE_WITH_<KEY>, where <KEY> is a
configuration entry published for the environment (e.g. REPLACE_WITH_CACHE_HOST).
Rendering is validate-then-apply: every token across every manifest is looked
up first, and any miss aborts before anything reaches the orchestrator.

Usage:
    platform-driver manifest render -E <env> --path k8s/base [--output rendered.yaml]
    platform-driver manifest apply -E <env> --path k8s/base [--json-output]
"""

import json
import logging
import re
import sys
from pathlib import Path
from typing import Optional

import yaml

from errors import MissingConfigurationError, PartialApplyError
from providers.base import ConfigStore, ObjectResult, WorkloadOrchestrator

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = 'REPLACE_WITH_'

# Greedy, so REPLACE_WITH_CACHE_HOST_PORT is one token, never CACHE_HOST + "_PORT"
PLACEHOLDER_PATTERN = re.compile(PLACEHOLDER_PREFIX + r'([A-Z0-9_]+)')

PENDING = 'pending'
SCANNED = 'scanned'
APPLIED = 'applied'
APPLY_FAILED = 'apply_failed'


def find_placeholders(manifest: str) -> list[str]:
    """Configuration keys referenced by a manifest, in order, without duplicates."""
    seen: dict[str, None] = {}
    for m in PLACEHOLDER_PATTERN.finditer(manifest):
        seen.setdefault(m.group(1), None)
    return list(seen)


def substitute(manifest: str, values: dict[str, str]) -> str:
    """Replace every token in one pass; substituted text is never rescanned."""
    return PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], manifest)


def load_templates(paths: list[Path], orchestrator: Optional[WorkloadOrchestrator] = None) -> list[str]:
    """Read manifest templates.

    A file is read as is. A directory with a kustomization file is built
    through the orchestrator; any other directory contributes its *.yaml and
    *.yml files in name order.

    Raises:
        FileNotFoundError: If a path does not exist
    """
    manifests = []
    for path in paths:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Manifest path not found: {path}")
        if path.is_file():
            manifests.append(path.read_text(encoding='utf-8'))
        elif any((path / k).exists() for k in ('kustomization.yaml', 'kustomization.yml')):
            if orchestrator is None:
                raise ValueError(f"{path} is a kustomize directory; an orchestrator is required")
            manifests.append(orchestrator.build(path))
        else:
            files = sorted(p for p in path.iterdir() if p.suffix in ('.yaml', '.yml') and p.is_file())
            manifests.extend(f.read_text(encoding='utf-8') for f in files)
    return manifests


class ManifestRenderer:
    """Single-use renderer: pending -> scanned -> applied | apply_failed.

    Attributes:
        state: Current lifecycle state
        results: Per-object results of the apply, once attempted
    """

    def __init__(self, store: ConfigStore, label: str,
                 orchestrator: Optional[WorkloadOrchestrator] = None):
        self.store = store
        self.label = label
        self.orchestrator = orchestrator
        self.state = PENDING
        self.values: dict[str, str] = {}
        self.results: list[ObjectResult] = []
        self._used = False

    def _claim(self) -> None:
        if self._used:
            raise RuntimeError("ManifestRenderer instances are single-use; create a new one")
        self._used = True

    def scan(self, manifests: list[str]) -> dict[str, str]:
        """Resolve every placeholder across all manifests.

        Returns:
            Token map of key -> value

        Raises:
            MissingConfigurationError: Listing every key with no entry
        """
        keys: dict[str, None] = {}
        for manifest in manifests:
            for key in find_placeholders(manifest):
                keys.setdefault(key, None)

        available = self.store.list(self.label) if keys else {}
        missing = [k for k in keys if k not in available]
        if missing:
            raise MissingConfigurationError(missing, self.label)

        self.values = {k: available[k] for k in keys}
        self.state = SCANNED
        logger.info(f"Resolved {len(self.values)} placeholder(s) for '{self.label}'")
        return self.values

    def render(self, manifests: list[str]) -> list[str]:
        """Scan and substitute without applying.

        Raises:
            MissingConfigurationError: If any placeholder is unresolved
        """
        self._claim()
        values = self.scan(manifests)
        return [substitute(m, values) for m in manifests]

    def run(self, manifests: list[str]) -> list[ObjectResult]:
        """Scan, substitute and apply the whole batch.

        Raises:
            MissingConfigurationError: If any placeholder is unresolved (nothing applied)
            PartialApplyError: If the orchestrator rejected some objects
            BackendError: If the orchestrator could not be reached (state is apply_failed)
        """
        self._claim()
        if self.orchestrator is None:
            raise ValueError("ManifestRenderer.run requires an orchestrator")

        values = self.scan(manifests)
        rendered = [substitute(m, values) for m in manifests]

        try:
            self.results = self.orchestrator.apply(rendered)
        except Exception:
            self.state = APPLY_FAILED
            raise
        failed = [r for r in self.results if not r.success]
        if failed:
            self.state = APPLY_FAILED
            raise PartialApplyError(failed, [r for r in self.results if r.success])

        self.state = APPLIED
        logger.info(f"Applied {len(self.results)} object(s)")
        return self.results


def _parser(verb: str):
    import argparse

    from provision_opr.cli import add_env_args

    parser = argparse.ArgumentParser(
        prog=f'platform-driver manifest {verb}',
        description=f'{verb.capitalize()} workload manifests with published configuration',
    )
    add_env_args(parser)
    parser.add_argument(
        '--path', '-p',
        action='append',
        required=True,
        type=Path,
        help='Manifest file, directory or kustomize directory (repeatable)',
    )
    return parser


def render_main(argv: list) -> int:
    """CLI entry point for 'manifest render'."""
    from errors import DriverError
    from provision_opr.cli import load_env, setup_logging
    from providers import build_backends

    parser = _parser('render')
    parser.add_argument('--output', '-o', type=Path, help='Write rendered manifests here (default: stdout)')
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    env_config = load_env(args)
    try:
        backends = build_backends(env_config)
        manifests = load_templates(args.path, backends.orchestrator)
        rendered = ManifestRenderer(backends.config_store, env_config.label).render(manifests)
    except (DriverError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    text = '\n---\n'.join(m.strip() for m in rendered) + '\n'
    if args.output:
        args.output.write_text(text, encoding='utf-8')
        logger.info(f"Wrote {args.output}")
    else:
        print(text, end='')
    return 0


def apply_main(argv: list) -> int:
    """CLI entry point for 'manifest apply'."""
    from errors import DriverError
    from provision_opr.cli import load_env, setup_logging
    from providers import build_backends

    args = _parser('apply').parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    env_config = load_env(args)
    renderer = None
    try:
        backends = build_backends(env_config)
        manifests = load_templates(args.path, backends.orchestrator)
        renderer = ManifestRenderer(backends.config_store, env_config.label, backends.orchestrator)
        if args.dry_run:
            renderer.render(manifests)
            logger.info("[dry-run] All placeholders resolved; nothing applied")
            return 0
        renderer.run(manifests)
        success, message = True, ''
    except (DriverError, OSError, ValueError, yaml.YAMLError) as e:
        success, message = False, str(e)

    if args.json_output:
        output = {
            'verb': 'apply',
            'success': success,
            'state': renderer.state if renderer else PENDING,
            'objects': [vars(r) for r in renderer.results] if renderer else [],
        }
        if message:
            output['error'] = message
        print(json.dumps(output, indent=2))
    elif not success:
        print(f"Error: {message}", file=sys.stderr)
    return 0 if success else 1


def manifest_main(argv: list) -> int:
    """CLI dispatcher for 'manifest' noun."""
    if not argv or argv[0].startswith('-'):
        print("Usage: platform-driver manifest <action> [options]")
        print()
        print("Actions:")
        print("  render   Resolve placeholders and print the manifests")
        print("  apply    Resolve placeholders and apply to the cluster")
        print()
        print("Run 'platform-driver manifest <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == 'render':
        return render_main(rest)
    if action == 'apply':
        return apply_main(rest)

    print(f"Error: Unknown manifest action '{action}'")
    print("Available actions: render, apply")
    return 1
