"""Azure App Configuration and Key Vault stores built on the az CLI."""

import json
import logging
import os
import tempfile
from typing import Optional

from common import run_command, run_json
from config import EnvConfig
from errors import BackendError
from providers.base import ConfigEntry

logger = logging.getLogger(__name__)

KEYVAULT_REF_CONTENT_TYPE = 'application/vnd.microsoft.appconfig.keyvaultref+json;charset=utf-8'


def _entry_value(item: dict) -> str:
    """Plain value of a listed key; secret references collapse to their URI."""
    value = item.get('value') or ''
    if str(item.get('contentType') or '').startswith('application/vnd.microsoft.appconfig.keyvaultref'):
        try:
            return json.loads(value).get('uri', value)
        except json.JSONDecodeError:
            return value
    return value


class AppConfigStore:
    """ConfigStore backed by `az appconfig kv` with the environment as label."""

    def __init__(self, config: EnvConfig):
        if not config.config_store:
            raise BackendError('configure app configuration', f"env '{config.name}' sets no config_store")
        self.config = config
        self.name = config.config_store

    def _kv(self, *args: str) -> list[str]:
        cmd = ['az', 'appconfig', 'kv', *args, '--name', self.name,
               '--auth-mode', 'login', '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def list(self, label: str) -> dict[str, str]:
        items = run_json(
            self._kv('list', '--label', label, '--all', '-o', 'json'),
            f"list keys in {self.name}", timeout=120,
        ) or []
        return {item['key']: _entry_value(item) for item in items}

    def get(self, key: str, label: str) -> Optional[str]:
        rc, out, err = run_command(
            self._kv('show', '--key', key, '--label', label, '-o', 'json'), timeout=120)
        if rc != 0:
            if 'not exist' in err or 'NotFound' in err:
                return None
            raise BackendError(f"read {key} from {self.name}", err or out)
        return _entry_value(json.loads(out))

    def set(self, entry: ConfigEntry) -> None:
        if entry.reference is not None:
            cmd = self._kv('set-keyvault', '--key', entry.key, '--label', entry.label,
                           '--secret-identifier', entry.reference.uri, '--yes')
        else:
            cmd = self._kv('set', '--key', entry.key, '--label', entry.label,
                           '--value', entry.value, '--yes')
        rc, out, err = run_command(cmd, timeout=120)
        if rc != 0:
            raise BackendError(f"write {entry.key} to {self.name}", err or out)

    def delete(self, key: str, label: str) -> None:
        rc, out, err = run_command(
            self._kv('delete', '--key', key, '--label', label, '--yes'), timeout=120)
        if rc != 0:
            raise BackendError(f"delete {key} from {self.name}", err or out)


class KeyVaultSecretStore:
    """SecretStore backed by `az keyvault secret`.

    Values are passed through a private temporary file so they never appear
    on a command line.
    """

    def __init__(self, config: EnvConfig):
        self.config = config
        self.vault = config.secret_store
        self.uri = config.secret_store_uri

    def _secret(self, *args: str) -> list[str]:
        cmd = ['az', 'keyvault', 'secret', *args, '--vault-name', self.vault, '--only-show-errors']
        if self.config.subscription:
            cmd.extend(['--subscription', self.config.subscription])
        return cmd

    def exists(self, name: str) -> bool:
        rc, out, err = run_command(
            self._secret('show', '--name', name, '--query', 'id', '-o', 'tsv'), timeout=60)
        if rc == 0:
            return True
        if 'SecretNotFound' in err or 'not found' in err.lower():
            return False
        raise BackendError(f"check secret {name}", err or out)

    def set(self, name: str, value: str) -> None:
        fd, path = tempfile.mkstemp(prefix='secret-')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(value)
            rc, out, err = run_command(self._secret(
                'set', '--name', name, '--file', path, '--encoding', 'utf-8', '-o', 'none',
            ), timeout=60)
        finally:
            os.unlink(path)
        if rc != 0:
            raise BackendError(f"write secret {name}", err or out)
