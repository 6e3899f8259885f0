"""End-to-end: provision network -> identity -> cache, publish, render and apply.

Runs the whole pipeline against in-memory backends, both through the
library API and through the 'deploy' command.
"""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from descriptor import StackLoader
from errors import MissingConfigurationError
from fakes import FakeConfigStore, FakeGrantStore, FakeOrchestrator, FakeProvider, FakeSecretStore
from post_deploy import seed_secrets
from provision_opr.cli import deploy_main
from provision_opr.executor import ProvisioningEngine
from provision_opr.grants import AccessPolicyAssigner
from provision_opr.graph import DependencyGraph
from providers import Backends
from publisher import ConfigurationPublisher, SecretPublisher
from renderer import ManifestRenderer

TEMPLATE = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: api
spec:
  template:
    spec:
      containers:
        - name: api
          env:
            - name: REDIS_HOST
              value: REPLACE_WITH_CACHE_HOST
            - name: AZURE_CLIENT_ID
              value: REPLACE_WITH_IDENTITY_CLIENT_ID
            - name: REDIS_KEY_REF
              value: REPLACE_WITH_CACHE_KEY_REF
"""


@pytest.fixture
def backends(platform_outputs):
    return Backends(
        provider=FakeProvider(outputs=platform_outputs,
                              secret_values={'cache': {'primaryKey': 'k1'}}),
        grants=FakeGrantStore(),
        config_store=FakeConfigStore(label='dev'),
        secret_store=FakeSecretStore(),
        orchestrator=FakeOrchestrator(),
    )


class TestPipeline:
    """Library-level walk through every stage."""

    def test_full_pipeline(self, site_config_dir, env_config, backends):
        stack = StackLoader(str(site_config_dir)).load('platform')
        engine = ProvisioningEngine(
            stack=stack,
            graph=DependencyGraph(stack),
            config=env_config,
            provider=backends.provider,
            assigner=AccessPolicyAssigner(backends.grants, base_delay=0),
        )

        success, state = engine.apply()
        assert success is True
        assert [name for _, name in backends.provider.mutations()] == [
            'network', 'identity', 'cache']
        assert len(backends.grants.created) == 1

        secrets = SecretPublisher(backends.secret_store, backends.config_store, 'dev')
        ConfigurationPublisher(
            stack, backends.config_store, 'dev', secret_publisher=secrets).publish(state)
        published = backends.config_store.list('dev')
        assert published['CACHE_HOST'] == 'cache.redis.cache.windows.net'
        assert published['IDENTITY_CLIENT_ID'] == 'client-1'
        assert 'k1' not in published.values()
        assert backends.secret_store.values['redis-primary-key'] == 'k1'

        seeded = seed_secrets(stack, secrets)
        assert seeded.created == ['session-secret']

        results = ManifestRenderer(backends.config_store, 'dev', backends.orchestrator).run(
            [TEMPLATE])
        assert [r.object_name for r in results] == ['Deployment/api']
        (batch,) = backends.orchestrator.batches
        assert 'value: cache.redis.cache.windows.net' in batch[0]
        assert 'value: https://kv-test.vault.azure.net/secrets/redis-primary-key' in batch[0]

        # Rerun changes nothing and issues no second grant
        before = list(backends.provider.mutations())
        success, state = engine.apply()
        assert success is True
        assert backends.provider.mutations() == before
        assert len(backends.grants.created) == 1

    def test_render_before_publish_applies_nothing(self, backends):
        renderer = ManifestRenderer(backends.config_store, 'dev', backends.orchestrator)
        with pytest.raises(MissingConfigurationError) as exc_info:
            renderer.run([TEMPLATE])
        assert exc_info.value.keys == ['CACHE_HOST', 'CACHE_KEY_REF', 'IDENTITY_CLIENT_ID']
        assert backends.orchestrator.batches == []


class TestDeployCommand:
    """The 'deploy' command wires the same stages."""

    def test_deploy(self, site_config_dir, backends, tmp_path, capsys):
        manifest = tmp_path / 'api.yaml'
        manifest.write_text(TEMPLATE)

        with patch('providers.build_backends', return_value=backends):
            rc = deploy_main(['-S', 'platform', '-E', 'dev',
                              '--site-config', str(site_config_dir),
                              '--skip-preflight', '--json-output',
                              '--path', str(manifest)])

        assert rc == 0
        output = json.loads(capsys.readouterr().out)
        assert output['verb'] == 'deploy'
        assert output['success'] is True
        assert 'CACHE_HOST' in output['published']['written']
        assert output['published']['secrets'] == ['redis-primary-key']
        assert output['seeded']['created'] == ['session-secret']
        assert output['objects'][0]['object_name'] == 'Deployment/api'

    def test_deploy_stops_on_failure_but_publishes_completed(
            self, site_config_dir, backends, tmp_path, capsys):
        backends.provider.failures['cache'] = 10
        manifest = tmp_path / 'api.yaml'
        manifest.write_text(TEMPLATE)

        with patch('providers.build_backends', return_value=backends), \
                patch('common.backoff_delay', return_value=0):
            rc = deploy_main(['-S', 'platform', '-E', 'dev',
                              '--site-config', str(site_config_dir),
                              '--skip-preflight', '--path', str(manifest)])

        assert rc == 1
        assert 'IDENTITY_CLIENT_ID' in backends.config_store.list('dev')
        assert 'CACHE_HOST' not in backends.config_store.list('dev')
        assert backends.orchestrator.batches == []

    def test_deploy_invalid_manifest_reports_error(self, site_config_dir, backends, tmp_path, capsys):
        manifest = tmp_path / 'broken.yaml'
        manifest.write_text('kind: Deployment\nmetadata: [unclosed\n')

        with patch('providers.build_backends', return_value=backends):
            rc = deploy_main(['-S', 'platform', '-E', 'dev',
                              '--site-config', str(site_config_dir),
                              '--skip-preflight', '--path', str(manifest)])

        assert rc == 1
        assert 'Error: ' in capsys.readouterr().err
