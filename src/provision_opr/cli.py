"""CLI handlers for stack verb commands (apply, destroy, plan, validate) and deploy.

Usage:
    platform-driver stack apply -S <stack> -E <env> [--dry-run] [--json-output] [--verbose]
    platform-driver stack destroy -S <stack> -E <env> [--dry-run] [--yes]
    platform-driver stack plan -S <stack> -E <env> [--json-output]
    platform-driver stack validate -S <stack> [--verbose]
    platform-driver deploy -S <stack> -E <env> [--path k8s/base] [--skip-manifests]
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

import yaml

from config import ConfigError, list_envs, load_env_config
from descriptor import Stack, StackLoader, load_stack
from errors import DriverError
from provision_opr.executor import ProvisioningEngine
from provision_opr.grants import AccessPolicyAssigner
from provision_opr.graph import DependencyGraph
from validation import validate_readiness

logger = logging.getLogger(__name__)


def add_env_args(parser: argparse.ArgumentParser) -> None:
    """Options shared by every command that targets an environment."""
    parser.add_argument(
        '--env', '-E',
        required=True,
        help=f'Target environment. Available: {", ".join(list_envs()) or "none"}',
    )
    parser.add_argument(
        '--site-config',
        help='Site-config directory (default: $PLATFORM_SITE_CONFIG or ../site-config)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )


def add_stack_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--stack', '-S',
        help='Stack name from site-config/stacks/',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
    )


def add_target_args(parser: argparse.ArgumentParser) -> None:
    add_env_args(parser)
    add_stack_args(parser)


def setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def load_env(args):
    """Load the environment named by --env.

    Raises:
        SystemExit: If the environment is unknown or invalid
    """
    site_config = Path(args.site_config) if getattr(args, 'site_config', None) else None
    try:
        return load_env_config(args.env, site_config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def load_stack_arg(args) -> Stack:
    """Load the stack named by -S, --stack-file or --stack-json.

    Raises:
        SystemExit: On a missing or invalid stack
    """
    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json", file=sys.stderr)
        sys.exit(1)

    try:
        if args.stack and not args.stack_file and not args.stack_json:
            return StackLoader(getattr(args, 'site_config', None)).load(args.stack)
        return load_stack(file_path=args.stack_file, json_str=args.stack_json)
    except ConfigError as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(1)


def load_stack_and_env(args):
    """Returns (stack, env_config)."""
    return load_stack_arg(args), load_env(args)


def run_preflight(args, config, requirements) -> Optional[int]:
    """Run preflight checks.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if getattr(args, 'skip_preflight', False) or getattr(args, 'dry_run', False):
        return None

    errors = validate_readiness(config, requirements)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


class _ProvisionRequirements:
    requires_provider = True


def _build_graph(stack: Stack) -> Optional[DependencyGraph]:
    try:
        return DependencyGraph(stack)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _build_engine(stack, graph, env_config, dry_run: bool, with_publisher: bool = False):
    from providers import build_backends

    backends = build_backends(env_config)
    cancel = threading.Event()
    settings = stack.settings
    assigner = AccessPolicyAssigner(
        backends.grants,
        attempts=settings.retry_attempts or env_config.retry_attempts,
        base_delay=(settings.retry_base_delay if settings.retry_base_delay is not None
                    else env_config.retry_base_delay),
        cancel=cancel,
    )
    publisher = None
    if with_publisher:
        from publisher import build_publisher
        publisher = build_publisher(stack, env_config, backends, dry_run)
    engine = ProvisioningEngine(
        stack=stack,
        graph=graph,
        config=env_config,
        provider=backends.provider,
        assigner=assigner,
        publisher=publisher,
        dry_run=dry_run,
        cancel=cancel,
    )
    return engine, backends


def _install_cancel_handler(engine: ProvisioningEngine) -> None:
    """SIGINT/SIGTERM stop new work; in-flight creates finish."""
    def handler(signum, _frame):
        logger.warning(f"Received signal {signum}, cancelling after in-flight operations")
        engine.cancel.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _emit_json(verb: str, success: bool, state, duration: float, **extra) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
        **state.to_dict(),
        **extra,
    }
    print(json.dumps(output, indent=2))


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = argparse.ArgumentParser(
        prog='platform-driver stack apply',
        description='Provision a stack',
    )
    add_target_args(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)

    class _Requirements:
        requires_provider = True
        requires_role_assignments = any(d.access for d in stack.descriptors)

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    graph = _build_graph(stack)
    if graph is None:
        return 1

    logger.info(f"Provisioning stack '{stack.name}' on {env_config.name}")
    engine, _ = _build_engine(stack, graph, env_config, args.dry_run)
    _install_cancel_handler(engine)

    start = time.time()
    try:
        success, state = engine.apply()
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    duration = time.time() - start

    if args.json_output:
        _emit_json('apply', success, state, duration)
    elif state.failure is not None:
        print(f"Error: {state.failure}", file=sys.stderr)

    return 0 if success else 1


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = argparse.ArgumentParser(
        prog='platform-driver stack destroy',
        description='Tear down a stack in reverse dependency order',
    )
    add_target_args(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)

    class _Requirements:
        requires_provider = True
        requires_config_store = True

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    graph = _build_graph(stack)
    if graph is None:
        return 1

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy all resources in stack '{stack.name}'.")
        print(f"Target environment: {env_config.name} ({env_config.resource_group})")
        print("Published configuration entries will be deleted. This cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{stack.name}' on {env_config.name}")
    engine, _ = _build_engine(stack, graph, env_config, args.dry_run, with_publisher=True)
    _install_cancel_handler(engine)

    start = time.time()
    success, state = engine.destroy()
    duration = time.time() - start

    if args.json_output:
        _emit_json('destroy', success, state, duration)

    return 0 if success else 1


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = argparse.ArgumentParser(
        prog='platform-driver stack plan',
        description='Preview changes without provisioning',
    )
    add_target_args(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)

    preflight_rc = run_preflight(args, env_config, _ProvisionRequirements)
    if preflight_rc is not None:
        return preflight_rc

    graph = _build_graph(stack)
    if graph is None:
        return 1

    engine, _ = _build_engine(stack, graph, env_config, dry_run=False)
    try:
        changes = engine.plan()
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({
            'verb': 'plan',
            'stack': stack.name,
            'environment': env_config.name,
            'changes': [c.to_dict() for c in changes],
        }, indent=2))
        return 0

    symbols = {'create': '+', 'update': '~', 'unchanged': '='}
    print(f"\nPlan for stack '{stack.name}' on {env_config.name}:\n")
    for c in changes:
        print(f"  {symbols[c.action]} {c.name} ({c.kind}): {c.action}")
        if c.action == 'update' and c.changes:
            print(f"      drift: {', '.join(c.changes)}")
        if c.unknown:
            print(f"      known after apply: {', '.join(c.unknown)}")
    counts = {a: sum(1 for c in changes if c.action == a) for a in symbols}
    print(f"\n{counts['create']} to create, {counts['update']} to update, "
          f"{counts['unchanged']} unchanged\n")
    return 0


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Loads the stack (schema, references, key collisions) and builds the
    dependency graph (cycles). Makes no network calls.
    """
    parser = argparse.ArgumentParser(
        prog='platform-driver stack validate',
        description='Validate stack structure and dependencies',
    )
    add_stack_args(parser)
    parser.add_argument(
        '--site-config',
        help='Site-config directory (default: $PLATFORM_SITE_CONFIG or ../site-config)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show dependency waves',
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    stack = load_stack_arg(args)
    graph = _build_graph(stack)
    if graph is None:
        return 1

    if args.verbose:
        for level, nodes in enumerate(graph.levels()):
            print(f"  [{level}] {', '.join(n.name for n in nodes)}")

    count = len(stack.descriptors)
    print(f"Stack '{stack.name}' is valid ({count} descriptor{'s' if count != 1 else ''})")
    return 0


def deploy_main(argv: list) -> int:
    """Handle 'deploy': provision, publish, seed secrets, apply manifests, approve connections."""
    from post_deploy import approve_connections, seed_secrets
    from providers.azure import PrivateLinkService
    from publisher import build_publisher
    from renderer import ManifestRenderer, load_templates
    from validation import wait_for_endpoints

    parser = argparse.ArgumentParser(
        prog='platform-driver deploy',
        description='Provision a stack and deploy workloads against it',
    )
    add_target_args(parser)
    parser.add_argument('--path', '-p', action='append', type=Path, default=[],
                        help='Manifest file or directory to apply (repeatable)')
    parser.add_argument('--force', '-f', action='store_true',
                        help='Overwrite existing generated secrets')
    parser.add_argument('--skip-secrets', action='store_true', help='Skip secret seeding')
    parser.add_argument('--skip-manifests', action='store_true', help='Skip manifest apply')
    parser.add_argument('--skip-connections', action='store_true',
                        help='Skip private endpoint approval')
    parser.add_argument('--probe', action='append', default=[],
                        help='HTTP endpoint to wait for after deploy (repeatable)')
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)

    stack, env_config = load_stack_and_env(args)

    class _Requirements:
        requires_provider = True
        requires_config_store = True
        requires_secret_store = bool(stack.generated_secrets or stack.secret_refs
                                     or any(d.secrets for d in stack.descriptors))
        requires_cluster = bool(args.path) and not args.skip_manifests
        requires_role_assignments = any(d.access for d in stack.descriptors)

    preflight_rc = run_preflight(args, env_config, _Requirements)
    if preflight_rc is not None:
        return preflight_rc

    graph = _build_graph(stack)
    if graph is None:
        return 1

    engine, backends = _build_engine(stack, graph, env_config, args.dry_run)
    _install_cancel_handler(engine)

    start = time.time()
    summary: dict = {}
    try:
        success, state = engine.apply()
        if args.dry_run:
            return 0

        # Publish what completed even when the run stopped early
        publisher = build_publisher(stack, env_config, backends)
        summary['published'] = publisher.publish(state).to_dict()
        if not success:
            if args.json_output:
                _emit_json('deploy', False, state, time.time() - start, **summary)
            elif state.failure is not None:
                print(f"Error: {state.failure}", file=sys.stderr)
            return 1

        if not args.skip_secrets and stack.generated_secrets and publisher.secret_publisher:
            summary['seeded'] = seed_secrets(
                stack, publisher.secret_publisher, force=args.force).to_dict()

        if args.path and not args.skip_manifests:
            manifests = load_templates(args.path, backends.orchestrator)
            renderer = ManifestRenderer(backends.config_store, env_config.label,
                                        backends.orchestrator)
            results = renderer.run(manifests)
            summary['objects'] = [vars(r) for r in results]

        if not args.skip_connections and env_config.private_link_service:
            summary['approved'] = approve_connections(
                PrivateLinkService(env_config), env_config.private_link_service)

        probe_errors = wait_for_endpoints(args.probe) if args.probe else []
        for error in probe_errors:
            logger.error(error)
        success = not probe_errors
    except (DriverError, ConfigError, OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    duration = time.time() - start
    if args.json_output:
        _emit_json('deploy', success, state, duration, **summary)
    else:
        logger.info(f"Deploy of '{stack.name}' to {env_config.name} "
                    f"{'completed' if success else 'failed'} in {duration:.1f}s")
    return 0 if success else 1
