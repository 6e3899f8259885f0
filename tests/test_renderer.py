"""Tests for renderer module."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import BackendError, MissingConfigurationError, PartialApplyError
from fakes import FakeConfigStore, FakeOrchestrator
from providers import Backends
from renderer import (
    APPLIED,
    APPLY_FAILED,
    PENDING,
    SCANNED,
    ManifestRenderer,
    apply_main,
    find_placeholders,
    load_templates,
    manifest_main,
    render_main,
    substitute,
)

DEPLOYMENT = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: api
spec:
  template:
    spec:
      containers:
        - name: api
          env:
            - name: CACHE_HOST
              value: REPLACE_WITH_CACHE_HOST
            - name: CLIENT_ID
              value: REPLACE_WITH_IDENTITY_CLIENT_ID
"""

SERVICE = """apiVersion: v1
kind: Service
metadata:
  name: api
  annotations:
    host: REPLACE_WITH_CACHE_HOST
"""

CONFIG = {
    'CACHE_HOST': 'cache.redis.cache.windows.net',
    'IDENTITY_CLIENT_ID': 'client-1',
}


class UnreachableOrchestrator(FakeOrchestrator):
    """Orchestrator whose apply call itself fails."""

    def apply(self, manifests):
        self.batches.append(list(manifests))
        raise BackendError('kubectl apply', 'Unable to connect to the server')


class TestPlaceholders:
    """Tests for token discovery and substitution."""

    def test_find_in_order_without_duplicates(self):
        assert find_placeholders(DEPLOYMENT + SERVICE) == ['CACHE_HOST', 'IDENTITY_CLIENT_ID']

    def test_longest_token_wins(self):
        text = 'a: REPLACE_WITH_CACHE_HOST_PORT\nb: REPLACE_WITH_CACHE_HOST\n'
        assert find_placeholders(text) == ['CACHE_HOST_PORT', 'CACHE_HOST']
        result = substitute(text, {'CACHE_HOST': 'h', 'CACHE_HOST_PORT': 'h:6380'})
        assert result == 'a: h:6380\nb: h\n'

    def test_substituted_text_not_rescanned(self):
        result = substitute('x: REPLACE_WITH_A', {'A': 'REPLACE_WITH_B'})
        assert result == 'x: REPLACE_WITH_B'

    def test_lowercase_not_a_token(self):
        assert find_placeholders('REPLACE_WITH_cache') == []


class TestManifestRenderer:
    """Tests for validate-then-apply rendering."""

    def test_run_applies_rendered_batch(self):
        orchestrator = FakeOrchestrator()
        renderer = ManifestRenderer(FakeConfigStore(CONFIG), 'test', orchestrator)
        results = renderer.run([DEPLOYMENT, SERVICE])

        assert renderer.state == APPLIED
        assert [r.object_name for r in results] == ['Deployment/api', 'Service/api']
        (batch,) = orchestrator.batches
        assert 'REPLACE_WITH_' not in ''.join(batch)
        assert 'value: cache.redis.cache.windows.net' in batch[0]
        assert 'value: client-1' in batch[0]

    def test_missing_keys_apply_nothing(self):
        orchestrator = FakeOrchestrator()
        store = FakeConfigStore({'CACHE_HOST': 'h'})
        renderer = ManifestRenderer(store, 'test', orchestrator)

        with pytest.raises(MissingConfigurationError) as exc_info:
            renderer.run([DEPLOYMENT, SERVICE + 'x: REPLACE_WITH_DB_HOST\n'])

        assert exc_info.value.keys == ['DB_HOST', 'IDENTITY_CLIENT_ID']
        assert exc_info.value.code == 'E400'
        assert orchestrator.batches == []
        assert renderer.state == PENDING

    def test_keys_resolved_under_own_label(self):
        store = FakeConfigStore(CONFIG, label='prod')
        with pytest.raises(MissingConfigurationError, match="environment 'test'"):
            ManifestRenderer(store, 'test').render([DEPLOYMENT])

    def test_partial_apply(self):
        orchestrator = FakeOrchestrator(reject={'Service/api': 'field is immutable'})
        renderer = ManifestRenderer(FakeConfigStore(CONFIG), 'test', orchestrator)

        with pytest.raises(PartialApplyError) as exc_info:
            renderer.run([DEPLOYMENT, SERVICE])

        err = exc_info.value
        assert [r.object_name for r in err.failed] == ['Service/api']
        assert [r.object_name for r in err.applied] == ['Deployment/api']
        assert 'field is immutable' in str(err)
        assert renderer.state == APPLY_FAILED

    def test_orchestrator_error_marks_apply_failed(self):
        renderer = ManifestRenderer(FakeConfigStore(CONFIG), 'test', UnreachableOrchestrator())

        with pytest.raises(BackendError, match='Unable to connect'):
            renderer.run([DEPLOYMENT])

        assert renderer.state == APPLY_FAILED
        assert renderer.results == []

    def test_single_use(self):
        renderer = ManifestRenderer(FakeConfigStore(CONFIG), 'test', FakeOrchestrator())
        renderer.run([SERVICE])
        with pytest.raises(RuntimeError, match='single-use'):
            renderer.run([SERVICE])

    def test_failed_scan_consumes_instance(self):
        renderer = ManifestRenderer(FakeConfigStore(), 'test', FakeOrchestrator())
        with pytest.raises(MissingConfigurationError):
            renderer.run([SERVICE])
        with pytest.raises(RuntimeError):
            renderer.render([SERVICE])

    def test_render_without_orchestrator(self):
        renderer = ManifestRenderer(FakeConfigStore(CONFIG), 'test')
        (rendered,) = renderer.render([SERVICE])
        assert 'host: cache.redis.cache.windows.net' in rendered
        assert renderer.state == SCANNED

    def test_no_placeholders_skips_store(self):
        store = FakeConfigStore(CONFIG)
        renderer = ManifestRenderer(store, 'test', FakeOrchestrator())
        renderer.run(['apiVersion: v1\nkind: Namespace\nmetadata:\n  name: platform\n'])
        assert store.calls == []
        assert renderer.state == APPLIED

    def test_run_requires_orchestrator(self):
        with pytest.raises(ValueError, match='requires an orchestrator'):
            ManifestRenderer(FakeConfigStore(CONFIG), 'test').run([SERVICE])


class TestLoadTemplates:
    """Tests for reading manifest templates from disk."""

    def test_file(self, tmp_path):
        path = tmp_path / 'svc.yaml'
        path.write_text(SERVICE)
        assert load_templates([path]) == [SERVICE]

    def test_plain_directory_sorted(self, tmp_path):
        (tmp_path / 'b.yaml').write_text('b')
        (tmp_path / 'a.yml').write_text('a')
        (tmp_path / 'notes.txt').write_text('ignored')
        assert load_templates([tmp_path]) == ['a', 'b']

    def test_kustomize_directory_uses_orchestrator(self, tmp_path):
        (tmp_path / 'kustomization.yaml').write_text('resources: [svc.yaml]\n')
        (tmp_path / 'built.yaml').write_text(SERVICE)
        assert load_templates([tmp_path], FakeOrchestrator()) == [SERVICE]

    def test_kustomize_directory_without_orchestrator(self, tmp_path):
        (tmp_path / 'kustomization.yaml').write_text('resources: []\n')
        with pytest.raises(ValueError, match='orchestrator is required'):
            load_templates([tmp_path])

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_templates([tmp_path / 'nope.yaml'])


class TestManifestCli:
    """Tests for the manifest noun handlers."""

    @pytest.fixture
    def backends(self):
        return Backends(provider=None, grants=None,
                        config_store=FakeConfigStore(CONFIG, label='dev'),
                        secret_store=None, orchestrator=FakeOrchestrator())

    @pytest.fixture
    def manifest_file(self, tmp_path):
        path = tmp_path / 'deploy.yaml'
        path.write_text(DEPLOYMENT)
        return path

    def test_render_writes_output(self, site_config_dir, backends, manifest_file, tmp_path):
        output = tmp_path / 'rendered.yaml'
        with patch('providers.build_backends', return_value=backends):
            rc = render_main(['-E', 'dev', '--site-config', str(site_config_dir),
                              '--path', str(manifest_file), '--output', str(output)])
        assert rc == 0
        assert 'REPLACE_WITH_' not in output.read_text()

    def test_apply_json_output(self, site_config_dir, backends, manifest_file, capsys):
        with patch('providers.build_backends', return_value=backends):
            rc = apply_main(['-E', 'dev', '--site-config', str(site_config_dir),
                             '--path', str(manifest_file), '--json-output'])
        assert rc == 0
        output = json.loads(capsys.readouterr().out)
        assert output['success'] is True
        assert output['state'] == APPLIED
        assert output['objects'][0]['object_name'] == 'Deployment/api'

    def test_apply_missing_keys_fails(self, site_config_dir, manifest_file, capsys):
        backends = Backends(provider=None, grants=None, config_store=FakeConfigStore(label='dev'),
                            secret_store=None, orchestrator=FakeOrchestrator())
        with patch('providers.build_backends', return_value=backends):
            rc = apply_main(['-E', 'dev', '--site-config', str(site_config_dir),
                             '--path', str(manifest_file)])
        assert rc == 1
        assert 'CACHE_HOST' in capsys.readouterr().err
        assert backends.orchestrator.batches == []

    def test_apply_invalid_yaml_reports_error(self, site_config_dir, backends, tmp_path, capsys):
        broken = tmp_path / 'broken.yaml'
        broken.write_text('kind: Deployment\nmetadata: [unclosed\n')
        with patch('providers.build_backends', return_value=backends):
            rc = apply_main(['-E', 'dev', '--site-config', str(site_config_dir),
                             '--path', str(broken)])
        assert rc == 1
        assert 'Error: ' in capsys.readouterr().err

    def test_dispatcher_usage(self, capsys):
        assert manifest_main([]) == 1
        assert 'render' in capsys.readouterr().out

    def test_dispatcher_unknown_action(self):
        assert manifest_main(['explode']) == 1
