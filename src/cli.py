#!/usr/bin/env python3
"""CLI entry point for platform-driver.

Noun-action subcommands:
- stack: Infrastructure lifecycle (apply/destroy/plan/validate)
- deploy: Full pipeline (provision, publish, seed, manifests, approvals)
- config: Configuration publishing (publish)
- manifest: Workload manifests (render/apply)
- post-deploy: Post-deployment tasks (seed-secrets/approve-connections/import-images)
- preflight: Environment readiness checks
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from config import ConfigError, list_envs, load_env_config
from validation import format_preflight_results, run_preflight_checks

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Infrastructure lifecycle (apply/destroy/plan/validate)",
    "deploy": "Provision, publish configuration and apply workloads",
    "config": "Configuration publishing (publish)",
    "manifest": "Workload manifests (render/apply)",
    "post-deploy": "Post-deployment tasks (seed-secrets/approve-connections/import-images)",
    "preflight": "Check environment readiness",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'platform', '-E', 'dev'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: platform-driver stack <action> [options]")
        print()
        print("Actions:")
        print("  apply     Provision resources in dependency order")
        print("  destroy   Tear down resources in reverse order")
        print("  plan      Preview create/update/unchanged per resource")
        print("  validate  Validate stack structure and dependencies")
        print()
        print("Run 'platform-driver stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from provision_opr import cli as stack_cli

    handlers = {
        'apply': stack_cli.apply_main,
        'destroy': stack_cli.destroy_main,
        'plan': stack_cli.plan_main,
        'validate': stack_cli.validate_main,
    }
    if action in handlers:
        rc: int = handlers[action](rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(handlers)}")
    return 1


def preflight_main(argv: list) -> int:
    """Handle 'preflight' noun: standalone readiness report for an environment."""
    parser = argparse.ArgumentParser(
        prog='platform-driver preflight',
        description='Check tools, Azure login and environment configuration',
    )
    parser.add_argument(
        '--env', '-E',
        required=True,
        help=f'Environment to check. Available: {", ".join(list_envs()) or "none"}',
    )
    args = parser.parse_args(argv)

    try:
        config = load_env_config(args.env)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    success, results = run_preflight_checks(config)
    print(format_preflight_results(args.env, results))
    return 0 if success else 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "manifest")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    if noun == "deploy":
        from provision_opr.cli import deploy_main
        rc: int = deploy_main(argv)
        return rc

    if noun == "config":
        from publisher import config_main
        rc = config_main(argv)
        return rc

    if noun == "manifest":
        from renderer import manifest_main
        rc = manifest_main(argv)
        return rc

    if noun == "post-deploy":
        from post_deploy import post_deploy_main
        rc = post_deploy_main(argv)
        return rc

    if noun == "preflight":
        return preflight_main(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"platform-driver {get_version()}")
    print()
    print("Usage: platform-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'platform-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  platform-driver stack validate -S platform")
    print("  platform-driver stack plan -S platform -E dev")
    print("  platform-driver deploy -S platform -E dev --path k8s/base")
    print("  platform-driver manifest render -E dev --path k8s/base")
    print("  platform-driver post-deploy seed-secrets -S platform -E dev")


def main():
    """CLI entry point: dispatch to noun-action handlers."""
    if len(sys.argv) == 1:
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg in ('--version', '-V'):
        print(f"platform-driver {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, sys.argv[2:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
