"""Kubernetes backends built on kubectl.

Private clusters are reached through `az aks command invoke`, which runs the
kubectl command inside the cluster's network and attaches input files.
"""

import json
import logging
import shlex
import tempfile
from pathlib import Path
from typing import Optional

import yaml

from common import run_command
from config import EnvConfig
from errors import BackendError
from providers.base import ConfigEntry, ObjectResult

logger = logging.getLogger(__name__)

# kubectl apply success verbs, e.g. "deployment.apps/api configured"
APPLY_VERBS = ('created', 'configured', 'unchanged', 'serverside-applied')


def manifest_objects(manifests: list[str]) -> list[tuple[str, str]]:
    """(kind, name) of every object in a batch of manifests, in order."""
    objects = []
    for manifest in manifests:
        for doc in yaml.safe_load_all(manifest):
            if not isinstance(doc, dict):
                continue
            if doc.get('kind') == 'List':
                items = doc.get('items') or []
            else:
                items = [doc]
            for item in items:
                kind = item.get('kind', 'Unknown')
                name = (item.get('metadata') or {}).get('name', '')
                objects.append((kind, name))
    return objects


def parse_apply_output(objects: list[tuple[str, str]], rc: int, out: str,
                       err: str) -> list[ObjectResult]:
    """Map kubectl apply output back to per-object results."""
    applied: dict[tuple[str, str], str] = {}
    for line in out.splitlines():
        parts = line.strip().split()
        if len(parts) < 2 or parts[-1] not in APPLY_VERBS or '/' not in parts[0]:
            continue
        resource, _, name = parts[0].partition('/')
        applied[(resource.split('.')[0].lower(), name)] = parts[-1]

    error_lines = [line for line in err.splitlines() if line.strip()]
    results = []
    for kind, name in objects:
        object_name = f'{kind}/{name}'
        verb = applied.get((kind.lower(), name))
        if verb is not None:
            results.append(ObjectResult(object_name, True, verb))
            continue
        if rc == 0:
            results.append(ObjectResult(object_name, True, 'applied'))
            continue
        reason = next((line for line in error_lines if f'"{name}"' in line), None)
        results.append(ObjectResult(object_name, False, reason or 'not applied'))
    return results


class KubectlOrchestrator:
    """WorkloadOrchestrator backed by kubectl (or `az aks command invoke`)."""

    def __init__(self, config: EnvConfig, timeout: int = 600):
        self.config = config
        self.timeout = timeout

    def kubectl(self, args: list[str], stdin: Optional[str] = None) -> tuple[int, str, str]:
        """Run kubectl against the environment's cluster.

        stdin, if given, is passed as '-f -' input (or an attached file when invoking).
        """
        if not self.config.use_invoke:
            return run_command(['kubectl', *args], timeout=self.timeout, stdin=stdin)
        return self._invoke(args, stdin)

    def _invoke(self, args: list[str], stdin: Optional[str]) -> tuple[int, str, str]:
        if not self.config.cluster_name:
            raise BackendError('az aks command invoke', f"env '{self.config.name}' sets no cluster_name")
        with tempfile.TemporaryDirectory(prefix='invoke-') as tmp:
            cmd = ['az', 'aks', 'command', 'invoke',
                   '--resource-group', self.config.resource_group,
                   '--name', self.config.cluster_name,
                   '-o', 'json', '--only-show-errors']
            if stdin is not None:
                input_file = Path(tmp) / 'input.yaml'
                input_file.write_text(stdin, encoding='utf-8')
                args = ['input.yaml' if a == '-' else a for a in args]
                cmd.extend(['--file', str(input_file)])
            cmd.extend(['--command', shlex.join(['kubectl', *args])])
            if self.config.subscription:
                cmd.extend(['--subscription', self.config.subscription])

            rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            return rc, out, err
        try:
            result = json.loads(out)
        except json.JSONDecodeError as e:
            return 1, '', f'invalid command invoke output: {e}'
        exit_code = int(result.get('exitCode', 1))
        logs = result.get('logs') or ''
        return exit_code, logs, '' if exit_code == 0 else logs

    def apply(self, manifests: list[str]) -> list[ObjectResult]:
        objects = manifest_objects(manifests)
        if not objects:
            return []
        batch = '\n---\n'.join(m.strip() for m in manifests if m.strip())
        logger.info(f"Applying {len(objects)} object(s) to namespace '{self.config.namespace}'")
        rc, out, err = self.kubectl(['apply', '-n', self.config.namespace, '-f', '-'], stdin=batch)
        results = parse_apply_output(objects, rc, out, err)
        for r in results:
            log = logger.info if r.success else logger.error
            log(f"  {r.object_name}: {r.message}")
        return results

    def build(self, directory: Path) -> str:
        # Kustomize builds locally even for private clusters
        rc, out, err = run_command(['kubectl', 'kustomize', str(directory)], timeout=120)
        if rc != 0:
            raise BackendError(f"kubectl kustomize {directory}", err or out)
        return out


class ConfigMapStore:
    """ConfigStore backed by one ConfigMap per namespace.

    The namespace scopes entries, so labels are accepted but not stored.
    """

    def __init__(self, orchestrator: KubectlOrchestrator, name: str):
        self.orchestrator = orchestrator
        self.name = name
        self.namespace = orchestrator.config.namespace

    def list(self, label: str) -> dict[str, str]:
        rc, out, err = self.orchestrator.kubectl(
            ['get', 'configmap', self.name, '-n', self.namespace, '-o', 'json'])
        if rc != 0:
            if 'NotFound' in err:
                return {}
            raise BackendError(f"read configmap {self.name}", err or out)
        return dict(json.loads(out).get('data') or {})

    def get(self, key: str, label: str) -> Optional[str]:
        return self.list(label).get(key)

    def set(self, entry: ConfigEntry) -> None:
        patch = json.dumps({'data': {entry.key: entry.value}})
        rc, out, err = self.orchestrator.kubectl(
            ['patch', 'configmap', self.name, '-n', self.namespace, '--type', 'merge', '-p', patch])
        if rc != 0 and 'NotFound' in err:
            rc, out, err = self.orchestrator.kubectl(
                ['create', 'configmap', self.name, '-n', self.namespace,
                 f'--from-literal={entry.key}={entry.value}'])
        if rc != 0:
            raise BackendError(f"write {entry.key} to configmap {self.name}", err or out)

    def delete(self, key: str, label: str) -> None:
        patch = json.dumps([{'op': 'remove', 'path': f'/data/{key}'}])
        rc, out, err = self.orchestrator.kubectl(
            ['patch', 'configmap', self.name, '-n', self.namespace, '--type', 'json', '-p', patch])
        if rc != 0:
            raise BackendError(f"delete {key} from configmap {self.name}", err or out)
