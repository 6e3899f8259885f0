"""Tests for publisher module."""

import logging
import re
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from descriptor import ResourceDescriptor, StackLoader
from fakes import FakeConfigStore, FakeSecretStore
from provision_opr.state import OutputMap, ProvisionState
from publisher import (
    ConfigurationPublisher,
    SecretPublisher,
    build_publisher,
    format_value,
)
from providers import Backends


@pytest.fixture
def stack(site_config_dir):
    return StackLoader(str(site_config_dir)).load('platform')


@pytest.fixture
def state(stack, platform_outputs):
    """State after a successful apply of the platform stack."""
    state = ProvisionState('platform', 'test')
    for d in stack.descriptors:
        state.add_node(d.name).complete('created')
        state.outputs.set(d.name, platform_outputs[d.name])
    state.secrets['cache'] = {'primaryKey': 'k1'}
    return state


class TestFormatValue:
    """Tests for output value formatting."""

    @pytest.mark.parametrize('value,expected', [
        ('text', 'text'),
        (6380, '6380'),
        (True, 'true'),
        (False, 'false'),
        ({'b': 1, 'a': 2}, '{"a": 2, "b": 1}'),
        (['x'], '["x"]'),
    ])
    def test_format(self, value, expected):
        assert format_value(value) == expected


def _publisher(stack, store, **kwargs):
    secrets = SecretPublisher(FakeSecretStore(), store, 'test')
    return ConfigurationPublisher(stack, store, 'test', secret_publisher=secrets, **kwargs)


class TestConfigurationPublisher:
    """Tests for publishing outputs as configuration."""

    def test_publish_outputs_and_static(self, stack, state):
        store = FakeConfigStore()
        result = _publisher(stack, store).publish(state)
        published = store.list('test')
        assert published.pop('sentinel') == result.sentinel
        assert published == {
            'NETWORK_SUBNET_ID': '/subnets/default',
            'IDENTITY_CLIENT_ID': 'client-1',
            'CACHE_HOST': 'cache.redis.cache.windows.net',
            'CACHE_KEY_REF': 'https://kv-test.vault.azure.net/secrets/redis-primary-key',
            'APP_ENVIRONMENT': 'dev',
        }
        assert sorted(result.written) == [
            'APP_ENVIRONMENT', 'CACHE_HOST', 'IDENTITY_CLIENT_ID', 'NETWORK_SUBNET_ID']
        assert result.secrets == ['redis-primary-key']

    def test_sentinel_is_utc_timestamp(self, stack, state):
        result = _publisher(stack, FakeConfigStore()).publish(state)
        assert re.fullmatch(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z', result.sentinel)

    def test_sentinel_written_last(self, stack, state):
        store = FakeConfigStore()
        _publisher(stack, store).publish(state)
        assert [c for c in store.calls if c[0] == 'set'][-1] == ('set', 'sentinel')

    def test_no_changes_leaves_sentinel_alone(self, stack, platform_outputs):
        state = ProvisionState('platform', 'test')
        state.add_node('network').complete('created')
        state.outputs.set('network', platform_outputs['network'])
        state.add_node('identity').fail('boom')
        state.add_node('cache').skip('not started')
        store = FakeConfigStore({'NETWORK_SUBNET_ID': '/subnets/default',
                                 'APP_ENVIRONMENT': 'dev'})
        result = ConfigurationPublisher(stack, store, 'test').publish(state)
        assert result.written == []
        assert result.sentinel is None
        assert 'sentinel' not in store.list('test')

    def test_unchanged_values_not_rewritten(self, stack, state):
        store = FakeConfigStore({'CACHE_HOST': 'cache.redis.cache.windows.net'})
        result = _publisher(stack, store).publish(state)
        assert result.unchanged == ['CACHE_HOST']
        assert ('set', 'CACHE_HOST') not in store.calls

    def test_skips_incomplete_descriptors(self, stack, platform_outputs):
        state = ProvisionState('platform', 'test')
        state.add_node('network').complete('created')
        state.outputs.set('network', platform_outputs['network'])
        state.add_node('identity').fail('boom')
        state.add_node('cache').skip('not started')
        store = FakeConfigStore()
        ConfigurationPublisher(stack, store, 'test').publish(state)
        assert 'NETWORK_SUBNET_ID' in store.list('test')
        assert 'CACHE_HOST' not in store.list('test')

    def test_labels_are_isolated(self, stack, state):
        store = FakeConfigStore({'CACHE_HOST': 'other'}, label='prod')
        _publisher(stack, store).publish(state)
        assert store.get('CACHE_HOST', 'prod') == 'other'
        assert store.get('CACHE_HOST', 'test') == 'cache.redis.cache.windows.net'

    def test_dry_run_writes_nothing(self, stack, state):
        store = FakeConfigStore()
        secret_store = FakeSecretStore()
        secrets = SecretPublisher(secret_store, store, 'test', dry_run=True)
        result = ConfigurationPublisher(
            stack, store, 'test', secret_publisher=secrets, dry_run=True).publish(state)
        assert store.list('test') == {}
        assert secret_store.writes == []
        assert 'CACHE_HOST' in result.written

    def test_missing_output_writes_nothing(self, stack, state):
        state.outputs = OutputMap()
        state.outputs.set('network', {'subnetId': '/subnets/default'})
        state.outputs.set('identity', {'clientId': 'client-1'})
        state.outputs.set('cache', {'hostName': 'wrong-output'})
        store = FakeConfigStore()

        with pytest.raises(ConfigError, match="'cache' has no output 'host'"):
            _publisher(stack, store).publish(state)

        assert [c for c in store.calls if c[0] != 'list'] == []

    def test_secrets_without_secret_store_rejected(self, stack, state):
        store = FakeConfigStore()
        with pytest.raises(ConfigError, match="'cache' declares secret outputs"):
            ConfigurationPublisher(stack, store, 'test').publish(state)
        assert [c for c in store.calls if c[0] != 'list'] == []

    def test_secret_refs_without_secret_store_rejected(self, stack, platform_outputs):
        stack.secret_refs = {'SESSION_SECRET_REF': 'session-secret'}
        state = ProvisionState('platform', 'test')
        for d in stack.descriptors:
            state.add_node(d.name).skip('not started')
        with pytest.raises(ConfigError, match='declares secret references'):
            ConfigurationPublisher(stack, FakeConfigStore(), 'test').publish(state)

    def test_refuses_secret_output(self):
        d = ResourceDescriptor.from_dict({'kind': 'cache', 'name': 'cache'})
        d.publish = {'primaryKey': 'CACHE_PRIMARY_KEY'}
        d.secrets = ResourceDescriptor.from_dict({
            'kind': 'cache', 'name': 'cache', 'secrets': {'primaryKey': 'k'}}).secrets
        publisher = ConfigurationPublisher(None, FakeConfigStore(), 'test')
        with pytest.raises(ConfigError, match='Refusing to publish secret output'):
            publisher.entries_for(d, {'primaryKey': 'k1'})

    def test_missing_output(self):
        d = ResourceDescriptor.from_dict({'kind': 'cache', 'name': 'cache', 'publish': ['host']})
        publisher = ConfigurationPublisher(None, FakeConfigStore(), 'test')
        with pytest.raises(ConfigError, match="has no output 'host'"):
            publisher.entries_for(d, {})

    def test_unpublish(self, stack, state):
        store = FakeConfigStore()
        publisher = _publisher(stack, store)
        publisher.publish(state)
        assert publisher.unpublish(stack.get('cache')) == ['CACHE_HOST', 'CACHE_KEY_REF']
        assert publisher.unpublish_static() == ['APP_ENVIRONMENT', 'sentinel']
        assert store.list('test') == {
            'NETWORK_SUBNET_ID': '/subnets/default',
            'IDENTITY_CLIENT_ID': 'client-1',
        }


class TestSecretPublisher:
    """Tests for the secret path."""

    def test_secrets_go_to_secret_store(self, stack, state):
        config_store = FakeConfigStore()
        secret_store = FakeSecretStore()
        secrets = SecretPublisher(secret_store, config_store, 'test')
        result = ConfigurationPublisher(
            stack, config_store, 'test', secret_publisher=secrets).publish(state)

        assert secret_store.values == {'redis-primary-key': 'k1'}
        assert result.secrets == ['redis-primary-key']
        published = config_store.list('test')
        assert 'k1' not in published.values()
        assert published['CACHE_KEY_REF'] == (
            'https://kv-test.vault.azure.net/secrets/redis-primary-key')
        assert config_store.references[('test', 'CACHE_KEY_REF')] == 'redis-primary-key'

    def test_secret_writes_are_audited(self, caplog):
        secret_store = FakeSecretStore()
        with caplog.at_level(logging.INFO, logger='platform_driver.audit'):
            SecretPublisher(secret_store).write('db-password', 'hunter2', 'db')
        records = [r for r in caplog.records if r.name == 'platform_driver.audit']
        assert len(records) == 1
        assert "secret 'db-password' written by 'db'" in records[0].getMessage()
        assert 'hunter2' not in caplog.text

    def test_reference_without_config_store(self):
        assert SecretPublisher(FakeSecretStore()).write_reference('K', 's', 'db') is None

    def test_dry_run(self):
        secret_store = FakeSecretStore()
        SecretPublisher(secret_store, dry_run=True).write('s', 'v', 'db')
        assert secret_store.writes == []

    def test_static_secret_refs(self, stack, state):
        stack.secret_refs = {'SESSION_SECRET_REF': 'session-secret'}
        config_store = FakeConfigStore()
        secrets = SecretPublisher(FakeSecretStore(), config_store, 'test')
        publisher = ConfigurationPublisher(stack, config_store, 'test', secret_publisher=secrets)

        first = publisher.publish(state)
        second = publisher.publish(state)

        assert 'SESSION_SECRET_REF' in first.written
        assert 'SESSION_SECRET_REF' in second.unchanged


class TestBuildPublisher:
    """Tests for build_publisher wiring."""

    def test_without_secret_store(self, stack, env_config):
        backends = Backends(provider=None, grants=None, config_store=FakeConfigStore(),
                            secret_store=None, orchestrator=None)
        publisher = build_publisher(stack, env_config, backends)
        assert publisher.secret_publisher is None
        assert publisher.label == 'test'

    def test_with_secret_store(self, stack, env_config):
        backends = Backends(provider=None, grants=None, config_store=FakeConfigStore(),
                            secret_store=FakeSecretStore(), orchestrator=None)
        publisher = build_publisher(stack, env_config, backends, dry_run=True)
        assert publisher.secret_publisher.dry_run is True
