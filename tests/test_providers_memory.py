"""Tests for providers.memory module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import NotFound, ProviderError, RequiresReplacement
from providers.memory import InMemoryProvider


class TestInMemoryProvider:
    """CRUD behavior of the simulated provider."""

    def test_create_returns_id_and_observed(self, provider):
        resource_id, observed = provider.create('SecurityGroup', {'name_prefix': 'web-sg-'})
        assert resource_id.startswith('sg-')
        assert observed['arn'].endswith(resource_id)
        assert provider.calls == [('create', 'SecurityGroup', None, {'name_prefix': 'web-sg-'})]

    def test_instance_observed_attributes(self, provider):
        _, observed = provider.create('Instance', {
            'associate_public_ip_address': True,
            'root_block_device': [{'volume_size': 8}],
            'ebs_block_device': [{'device_name': '/dev/sdb'}, {'device_name': '/dev/sdc'}],
        })
        assert observed['instance_state'] == 'running'
        assert observed['public_ip'].startswith('203.0.113.')
        assert observed['private_dns'].endswith('.ec2.internal')
        volume_ids = [d['volume_id'] for d in observed['ebs_block_device']]
        assert len(set(volume_ids)) == 2
        assert observed['ebs_block_device'][0]['device_name'] == '/dev/sdb'

    def test_fixed_private_ip_kept(self, provider):
        _, observed = provider.create('Instance', {'private_ip': '10.1.2.3'})
        assert observed['private_ip'] == '10.1.2.3'

    def test_key_pair_fingerprint(self, provider):
        _, observed = provider.create('KeyPair', {'key_name': 'web-key', 'public_key': 'ssh-ed25519 AAAA'})
        assert len(observed['fingerprint'].split(':')) == 16

    def test_update_and_describe(self, provider):
        resource_id, _ = provider.create('Alarm', {'alarm_name': 'a', 'threshold': 80})
        provider.update('Alarm', resource_id, {'alarm_name': 'a', 'threshold': 90})
        assert provider.resources[resource_id]['attributes']['threshold'] == 90
        assert 'arn' in provider.describe('Alarm', resource_id)
        assert [c[0] for c in provider.mutating_calls()] == ['create', 'update']

    def test_update_requires_replacement(self):
        provider = InMemoryProvider(replace_on={'Instance': {'ami'}})
        resource_id, _ = provider.create('Instance', {'ami': 'ami-1'})
        with pytest.raises(RequiresReplacement, match='ami'):
            provider.update('Instance', resource_id, {'ami': 'ami-2'})

    def test_unknown_id_not_found(self, provider):
        with pytest.raises(NotFound):
            provider.describe('Instance', 'i-missing')
        with pytest.raises(NotFound):
            provider.destroy('Instance', 'i-missing')

    def test_wrong_kind_not_found(self, provider):
        resource_id, _ = provider.create('SecurityGroup', {})
        with pytest.raises(NotFound):
            provider.describe('Instance', resource_id)

    def test_destroy(self, provider):
        resource_id, _ = provider.create('SecurityGroup', {})
        provider.destroy('SecurityGroup', resource_id)
        assert provider.resources == {}

    def test_injected_failure(self, provider):
        provider.fail_on.add(('create', 'Instance'))
        with pytest.raises(ProviderError, match='injected failure') as exc_info:
            provider.create('Instance', {})
        assert exc_info.value.operation == 'create'


class TestPersistence:
    """JSON persistence between provider instances."""

    def test_resources_survive_reload(self, tmp_path):
        path = tmp_path / 'cloud.json'
        first = InMemoryProvider(path=path)
        sg_id, _ = first.create('SecurityGroup', {'description': 'x'})

        second = InMemoryProvider(path=path)
        assert sg_id in second.resources
        new_id, _ = second.create('SecurityGroup', {})
        assert new_id != sg_id
