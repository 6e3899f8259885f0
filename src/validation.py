"""Pre-flight validation checks for provisioning commands.

Every required value and tool is checked before the first network call that
could change anything, so a missing setting fails fast with an actionable
message instead of half-way through a deployment.
"""

import logging
import shutil
from typing import Optional

import requests
import urllib3

from common import poll_until, run_command, run_json
from errors import BackendError

# Suppress SSL warnings when probing endpoints with --insecure
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tooling
# -----------------------------------------------------------------------------

def validate_tools(tools: list[str]) -> list[str]:
    """Check CLI tools are on PATH.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    hints = {
        'az': 'Install the Azure CLI: https://learn.microsoft.com/cli/azure/install-azure-cli',
        'kubectl': 'Install kubectl: az aks install-cli',
    }
    for tool in tools:
        if shutil.which(tool) is None:
            errors.append(f"'{tool}' not found on PATH\n  {hints.get(tool, '')}".rstrip())
    return errors


def validate_az_login(subscription: str = '') -> list[str]:
    """Check the Azure CLI has an active login (and the subscription, if set)."""
    cmd = ['az', 'account', 'show', '--query', 'id', '-o', 'tsv']
    if subscription:
        cmd.extend(['--subscription', subscription])
    rc, out, err = run_command(cmd, timeout=30)
    if rc != 0:
        return [
            "Azure CLI is not logged in"
            + (f" to subscription '{subscription}'" if subscription else '')
            + f"\n  Run: az login\n  {err.strip()[:200]}"
        ]
    logger.debug(f"Azure subscription: {out.strip()}")
    return []


# -----------------------------------------------------------------------------
# Deploy permissions
# -----------------------------------------------------------------------------

# Built-in role definition ids
OWNER_ROLE = '8e3af657-a8ff-443c-a75c-2fe8c4bcb635'
CONTRIBUTOR_ROLE = 'b24988ac-6180-42a0-ab88-20f7382dd24c'
USER_ACCESS_ADMIN_ROLE = '18d7d88d-d35e-4fb5-a5c3-7773c20a72d9'

ROLE_WRITE_ACTIONS = ('*', 'Microsoft.Authorization/*',
                      'Microsoft.Authorization/roleAssignments/*',
                      'Microsoft.Authorization/roleAssignments/write')


def _can_write_role_assignments(permissions: list) -> bool:
    actions = {a for p in permissions for a in p.get('actions', [])}
    not_actions = {a for p in permissions for a in p.get('notActions', [])}
    return bool(actions & set(ROLE_WRITE_ACTIONS)) and not (not_actions & set(ROLE_WRITE_ACTIONS[1:]))


def validate_deploy_permissions(config) -> list[str]:
    """Check the signed-in principal may create resources and role assignments.

    Passes with Owner, or Contributor together with User Access Administrator,
    on the resource group or anything above it. Failing that, the effective
    ARM permissions on the scope are consulted.

    Returns:
        List of validation error messages (empty if valid)
    """
    sub = ['--subscription', config.subscription] if config.subscription else []
    try:
        account = run_json(['az', 'account', 'show', '-o', 'json', *sub],
                           'az account show', timeout=60) or {}
        sub_id = account.get('id', '')
        user = (account.get('user') or {}).get('name', '')
        scope = f'/subscriptions/{sub_id}'
        if config.resource_group:
            scope += f'/resourceGroups/{config.resource_group}'
        assignments = run_json([
            'az', 'role', 'assignment', 'list', '--assignee', user, '--scope', scope,
            '--include-inherited', '-o', 'json', *sub,
        ], 'az role assignment list', timeout=60) or []
    except BackendError as e:
        return [f"Cannot read role assignments\n  {e}"]

    roles = {str(a.get('roleDefinitionId', '')).rsplit('/', 1)[-1] for a in assignments}
    if OWNER_ROLE in roles or {CONTRIBUTOR_ROLE, USER_ACCESS_ADMIN_ROLE} <= roles:
        logger.debug(f"'{user}' holds deploy roles on {scope}")
        return []

    try:
        permissions = run_json([
            'az', 'rest', '--method', 'GET', '--uri',
            f'https://management.azure.com{scope}/providers/Microsoft.Authorization/'
            f'permissions?api-version=2022-04-01',
        ], 'az rest permissions', timeout=60) or {}
    except BackendError:
        permissions = {}
    if _can_write_role_assignments(permissions.get('value', [])):
        logger.debug(f"'{user}' may write role assignments on {scope}")
        return []

    held = sorted({a.get('roleDefinitionName', '') for a in assignments} - {''})
    return [
        f"'{user}' cannot create role assignments on {scope}\n"
        f"  Requires Owner, or Contributor and User Access Administrator "
        f"(holds: {', '.join(held) or 'none'})"
    ]


# -----------------------------------------------------------------------------
# Environment values
# -----------------------------------------------------------------------------

def validate_env_config(config, requirements) -> list[str]:
    """Check the environment sets every value a command needs.

    Args:
        config: EnvConfig instance
        requirements: Object with requires_* attributes

    Returns:
        List of validation error messages (empty if valid)
    """
    required = []
    if getattr(requirements, 'requires_provider', False):
        required.extend(['resource_group', 'location'])
    if getattr(requirements, 'requires_config_store', False):
        if config.config_store_kind == 'appconfig':
            required.append('config_store')
        else:
            required.append('configmap_name')
    if getattr(requirements, 'requires_secret_store', False):
        required.append('secret_store')
    if getattr(requirements, 'requires_cluster', False) and config.use_invoke:
        required.append('cluster_name')
    if getattr(requirements, 'requires_private_link', False):
        required.append('private_link_service')
    if getattr(requirements, 'requires_registry', False):
        required.append('container_registry')

    errors = []
    for key in required:
        if not getattr(config, key, None):
            errors.append(
                f"Missing '{key}' for environment '{config.name}'\n"
                f"  Add '{key}' to {config.config_file}"
            )
    return errors


def validate_readiness(config, requirements, check_login: bool = True) -> list[str]:
    """Run all readiness checks for a command.

    Args:
        config: EnvConfig instance
        requirements: Object with requires_* attributes
        check_login: Also verify the Azure CLI login

    Returns:
        Combined list of all validation errors
    """
    errors = validate_env_config(config, requirements)

    tools = ['az']
    if getattr(requirements, 'requires_cluster', False) or config.config_store_kind == 'configmap':
        tools.append('kubectl')
    tool_errors = validate_tools(tools)
    errors.extend(tool_errors)

    if check_login and not tool_errors and not errors:
        errors.extend(validate_az_login(config.subscription))
        if not errors and getattr(requirements, 'requires_role_assignments', False):
            errors.extend(validate_deploy_permissions(config))

    return errors


# -----------------------------------------------------------------------------
# Endpoint probes
# -----------------------------------------------------------------------------

def probe_endpoint(url: str, timeout: float = 10.0, verify: bool = True) -> tuple[bool, str]:
    """Single HTTP probe. Any response below 500 counts as reachable.

    Returns:
        (success, detail) tuple
    """
    try:
        resp = requests.get(url, timeout=timeout, verify=verify)
    except requests.exceptions.ConnectionError:
        return False, f"Cannot connect to {url}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {url}"
    except requests.exceptions.RequestException as e:
        return False, f"Error probing {url}: {e}"
    if resp.status_code >= 500:
        return False, f"{url} returned {resp.status_code}"
    return True, f"{url} returned {resp.status_code}"


def wait_for_endpoints(urls: list[str], timeout: float = 300, interval: float = 10,
                       verify: bool = True) -> list[str]:
    """Poll each endpoint until it answers.

    Returns:
        List of error messages for endpoints that never became reachable
    """
    errors = []
    for url in urls:
        last: dict[str, str] = {}

        def check(url=url, last=last) -> Optional[bool]:
            ok, detail = probe_endpoint(url, verify=verify)
            last['detail'] = detail
            return True if ok else None

        if poll_until(check, f"endpoint {url}", timeout=timeout, interval=interval):
            logger.info(f"Endpoint ready: {url}")
        else:
            errors.append(f"Endpoint not ready after {timeout}s: {last.get('detail', url)}")
    return errors


# -----------------------------------------------------------------------------
# Standalone preflight
# -----------------------------------------------------------------------------

def run_preflight_checks(config) -> tuple[bool, dict]:
    """Run standalone preflight checks for an environment.

    Returns:
        (success, results) tuple where results contains check details
    """
    results: dict[str, dict[str, list[str]]] = {
        'tools': {'passed': [], 'failed': []},
        'azure': {'passed': [], 'failed': []},
        'environment': {'passed': [], 'failed': []},
    }

    for tool in ('az', 'kubectl'):
        errors = validate_tools([tool])
        if errors:
            results['tools']['failed'].extend(errors)
        else:
            results['tools']['passed'].append(f"{tool} found")

    class _AllRequirements:
        requires_provider = True
        requires_config_store = True
        requires_secret_store = True
        requires_cluster = True

    env_errors = validate_env_config(config, _AllRequirements)
    if env_errors:
        results['environment']['failed'].extend(env_errors)
    else:
        results['environment']['passed'].append(f"{config.config_file.name} complete")

    if not results['tools']['failed']:
        login_errors = validate_az_login(config.subscription)
        if login_errors:
            results['azure']['failed'].extend(login_errors)
        else:
            results['azure']['passed'].append("Azure CLI logged in")
            perm_errors = validate_deploy_permissions(config)
            if perm_errors:
                results['azure']['failed'].extend(perm_errors)
            else:
                results['azure']['passed'].append(
                    "Deploy permissions (Owner or Contributor + User Access Administrator)")

    success = all(not cat['failed'] for cat in results.values())
    return success, results


def format_preflight_results(env_name: str, results: dict) -> str:
    """Format preflight check results for display."""
    lines = [f"\nPreflight checks for environment '{env_name}':\n"]

    category_names = {
        'tools': 'Tools',
        'azure': 'Azure CLI',
        'environment': 'Environment configuration',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    if all(not cat['failed'] for cat in results.values()):
        lines.append("All checks passed. Ready to deploy.")
    else:
        lines.append("Some checks failed. Fix issues before deploying.")

    return '\n'.join(lines)
