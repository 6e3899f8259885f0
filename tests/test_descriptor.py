"""Tests for descriptor module: references, key naming and stack loading."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from descriptor import (
    Reference,
    ResourceDescriptor,
    Stack,
    StackLoader,
    config_key,
    find_references,
    load_stack,
    resolve_value,
)


def _stack(descriptors, **extra):
    return Stack.from_dict({'name': 'test', 'descriptors': descriptors, **extra})


class TestReferences:
    """Tests for reference parsing and resolution."""

    def test_textual_reference(self):
        assert find_references('${network.subnetId}') == [Reference('network', 'subnetId')]

    def test_structural_reference(self):
        assert find_references({'ref': 'identity.principalId'}) == [
            Reference('identity', 'principalId')]

    def test_nested_references_in_order(self):
        value = {
            'a': ['x', '${one.out}'],
            'b': {'c': 'redis://${two.host}:${two.port}'},
        }
        assert find_references(value) == [
            Reference('one', 'out'), Reference('two', 'host'), Reference('two', 'port')]

    def test_invalid_structural_reference(self):
        with pytest.raises(ConfigError, match="expected 'descriptor.output'"):
            find_references({'ref': 'no-dot'})

    def test_whole_string_keeps_raw_value(self):
        values = {('cache', 'port'): 6380}
        result = resolve_value('${cache.port}', lambda r: values[(r.producer, r.output)])
        assert result == 6380

    def test_embedded_reference_interpolates(self):
        values = {('cache', 'host'): 'h', ('cache', 'port'): 6380}
        result = resolve_value('redis://${cache.host}:${cache.port}',
                               lambda r: values[(r.producer, r.output)])
        assert result == 'redis://h:6380'

    def test_str(self):
        assert str(Reference('a', 'b')) == '${a.b}'


class TestConfigKey:
    """Tests for the published key naming scheme."""

    @pytest.mark.parametrize('name,output,expected', [
        ('cache', 'host', 'CACHE_HOST'),
        ('identity', 'clientId', 'IDENTITY_CLIENT_ID'),
        ('app-config', 'endpoint', 'APP_CONFIG_ENDPOINT'),
        ('db', 'fullyQualifiedDomainName', 'DB_FULLY_QUALIFIED_DOMAIN_NAME'),
    ])
    def test_upper_snake(self, name, output, expected):
        assert config_key(name, output) == expected


class TestResourceDescriptor:
    """Tests for ResourceDescriptor.from_dict / to_dict."""

    def test_publish_list_uses_default_keys(self):
        d = ResourceDescriptor.from_dict({
            'kind': 'identity', 'name': 'identity', 'publish': ['clientId']})
        assert d.publish == {'clientId': 'IDENTITY_CLIENT_ID'}

    def test_publish_mapping_explicit_key(self):
        d = ResourceDescriptor.from_dict({
            'kind': 'cache', 'name': 'cache', 'publish': {'host': 'REDIS_HOST', 'port': None}})
        assert d.publish == {'host': 'REDIS_HOST', 'port': 'CACHE_PORT'}

    def test_secrets_short_and_long_form(self):
        d = ResourceDescriptor.from_dict({
            'kind': 'cache', 'name': 'cache',
            'secrets': {
                'primaryKey': 'redis-key',
                'secondaryKey': {'name': 'redis-key-2', 'ref_key': 'REDIS_KEY_2'},
            },
        })
        assert d.secret_outputs == {'primaryKey', 'secondaryKey'}
        assert d.secrets[1].ref_key == 'REDIS_KEY_2'

    def test_round_trip_fields(self):
        data = {
            'kind': 'cache', 'name': 'cache',
            'attributes': {'principal': '${identity.principalId}'},
            'publish': {'host': 'CACHE_HOST'},
            'access': [{'principal': 'identity', 'role': 'Reader'}],
            'depends_on': ['network'],
        }
        assert ResourceDescriptor.from_dict(data).to_dict() == data

    def test_access_requires_principal_and_role(self):
        with pytest.raises(ConfigError, match="requires 'principal' and 'role'"):
            ResourceDescriptor.from_dict({
                'kind': 'cache', 'name': 'cache', 'access': [{'principal': 'x'}]})


class TestStackValidation:
    """Tests for cross-descriptor validation at load time."""

    def test_valid_stack(self):
        stack = _stack([
            {'kind': 'network', 'name': 'net'},
            {'kind': 'identity', 'name': 'id', 'attributes': {'subnet': '${net.subnetId}'}},
        ])
        assert stack.names == ['net', 'id']

    def test_requires_descriptors(self):
        with pytest.raises(ConfigError, match='at least one descriptor'):
            Stack.from_dict({'name': 'empty', 'descriptors': []})

    def test_missing_kind(self):
        with pytest.raises(ConfigError, match='missing required field: kind'):
            _stack([{'name': 'x'}])

    def test_duplicate_names(self):
        with pytest.raises(ConfigError, match="Duplicate descriptor name: 'a'"):
            _stack([{'kind': 'network', 'name': 'a'}, {'kind': 'cache', 'name': 'a'}])

    def test_unknown_reference(self):
        with pytest.raises(ConfigError, match="unknown descriptor 'ghost'"):
            _stack([{'kind': 'cache', 'name': 'c', 'attributes': {'x': '${ghost.id}'}}])

    def test_unknown_depends_on(self):
        with pytest.raises(ConfigError, match="depends on unknown descriptor"):
            _stack([{'kind': 'cache', 'name': 'c', 'depends_on': ['ghost']}])

    def test_unknown_principal(self):
        with pytest.raises(ConfigError, match="unknown principal 'ghost'"):
            _stack([{'kind': 'cache', 'name': 'c',
                     'access': [{'principal': 'ghost', 'role': 'Reader'}]}])

    def test_secret_output_cannot_be_published(self):
        with pytest.raises(ConfigError, match='secret output'):
            _stack([{'kind': 'cache', 'name': 'c',
                     'publish': ['primaryKey'], 'secrets': {'primaryKey': 'k'}}])

    def test_reference_to_secret_output_rejected(self):
        with pytest.raises(ConfigError, match="secret output 'cache.primaryKey'"):
            _stack([
                {'kind': 'cache', 'name': 'cache', 'secrets': {'primaryKey': 'kv-key'}},
                {'kind': 'app', 'name': 'app', 'attributes': {'key': '${cache.primaryKey}'}},
            ])

    def test_reference_to_other_output_of_secret_producer(self):
        stack = _stack([
            {'kind': 'cache', 'name': 'cache', 'secrets': {'primaryKey': 'kv-key'}},
            {'kind': 'app', 'name': 'app', 'attributes': {'host': '${cache.host}'}},
        ])
        assert stack.names == ['cache', 'app']

    def test_duplicate_config_key(self):
        with pytest.raises(ConfigError, match="'CACHE_HOST' is produced by both"):
            _stack([
                {'kind': 'cache', 'name': 'cache', 'publish': ['host']},
                {'kind': 'cache', 'name': 'other', 'publish': {'host': 'CACHE_HOST'}},
            ])

    def test_static_config_collides_with_output(self):
        with pytest.raises(ConfigError, match="produced by both 'stack' and 'cache'"):
            _stack([{'kind': 'cache', 'name': 'cache', 'publish': ['host']}],
                   config={'CACHE_HOST': 'fixed'})


class TestStackLoading:
    """Tests for StackLoader and load_stack."""

    def test_list_and_load(self, site_config_dir):
        loader = StackLoader(str(site_config_dir))
        assert loader.list_stacks() == ['platform']
        stack = loader.load('platform')
        assert stack.names == ['network', 'identity', 'cache']
        assert stack.config == {'APP_ENVIRONMENT': 'dev'}
        assert stack.generated_secrets[0].name == 'session-secret'
        assert stack.source_path == site_config_dir / 'stacks' / 'platform.yaml'

    def test_load_unknown_lists_available(self, site_config_dir):
        with pytest.raises(ConfigError, match='Available: platform'):
            StackLoader(str(site_config_dir)).load('nope')

    def test_load_file(self, site_config_dir):
        stack = load_stack(file_path=str(site_config_dir / 'stacks' / 'platform.yaml'))
        assert stack.name == 'platform'

    def test_load_file_not_found(self, tmp_path):
        with pytest.raises(ConfigError, match='Stack file not found'):
            load_stack(file_path=str(tmp_path / 'missing.yaml'))

    def test_load_json(self):
        stack = load_stack(json_str=json.dumps({
            'name': 'inline', 'descriptors': [{'kind': 'network', 'name': 'net'}]}))
        assert stack.name == 'inline'

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match='Invalid stack JSON'):
            load_stack(json_str='{not json')

    def test_no_source(self):
        with pytest.raises(ConfigError, match='No stack specified'):
            load_stack()

    def test_to_json_round_trip(self, site_config_dir):
        stack = StackLoader(str(site_config_dir)).load('platform')
        again = Stack.from_json(stack.to_json())
        assert again.to_dict() == stack.to_dict()
