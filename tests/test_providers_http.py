"""Tests for providers.http module."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import stack
from config import DriverSettings
from errors import NotFound, PartialFailure, ProviderError, ProviderTimeout, RequiresReplacement
from providers import HttpProvider, InMemoryProvider, create_provider
from stack_opr.executor import Reconciler


def _response(status, body=None):
    resp = MagicMock()
    resp.status_code = status
    if body is None:
        resp.json.side_effect = ValueError('no json')
        resp.text = ''
    else:
        resp.json.return_value = body
        resp.text = str(body)
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def http(session):
    return HttpProvider('https://cloud.example/v1/', token='tok', session=session)


class TestRequests:
    """Request construction."""

    def test_create_posts_attributes(self, http, session):
        session.request.return_value = _response(201, {'id': 'sg-1', 'attributes': {'arn': 'a'}})
        assert http.create('SecurityGroup', {'description': 'x'}) == ('sg-1', {'arn': 'a'})

        args, kwargs = session.request.call_args
        assert args == ('POST', 'https://cloud.example/v1/resources/SecurityGroup')
        assert kwargs['json'] == {'description': 'x'}
        assert kwargs['headers']['Authorization'] == 'Bearer tok'
        assert kwargs['verify'] is True

    def test_no_token_no_auth_header(self, session):
        session.request.return_value = _response(200, {'attributes': {}})
        HttpProvider('https://cloud.example/v1', session=session).describe('Instance', 'i-1')
        assert 'Authorization' not in session.request.call_args.kwargs['headers']

    def test_update_patches_resource(self, http, session):
        session.request.return_value = _response(200, {'attributes': {'instance_state': 'running'}})
        assert http.update('Instance', 'i-1', {'instance_type': 't3.large'}) == {'instance_state': 'running'}
        args, _ = session.request.call_args
        assert args == ('PATCH', 'https://cloud.example/v1/resources/Instance/i-1')

    def test_insecure_disables_warnings(self, session):
        with patch('providers.http.urllib3.disable_warnings') as disable:
            HttpProvider('https://cloud.example/v1', verify_tls=False, session=session)
        disable.assert_called_once()


class TestErrors:
    """Mapping of HTTP failures to provider errors."""

    def test_describe_404_not_found(self, http, session):
        session.request.return_value = _response(404, {'error': {'code': 'not_found', 'message': 'gone'}})
        with pytest.raises(NotFound, match='gone') as exc_info:
            http.describe('Instance', 'i-1')
        assert exc_info.value.resource_id == 'i-1'

    def test_update_409_requires_replacement(self, http, session):
        session.request.return_value = _response(
            409, {'error': {'code': 'requires_replacement', 'message': 'ami is immutable'}})
        with pytest.raises(RequiresReplacement, match='ami is immutable'):
            http.update('Instance', 'i-1', {'ami': 'ami-2'})

    def test_other_409_is_provider_error(self, http, session):
        session.request.return_value = _response(409, {'error': {'code': 'conflict', 'message': 'busy'}})
        with pytest.raises(ProviderError, match=r'HTTP 409 \(conflict\): busy') as exc_info:
            http.update('Instance', 'i-1', {})
        assert not isinstance(exc_info.value, RequiresReplacement)

    def test_non_json_error_body(self, http, session):
        session.request.return_value = _response(500)
        with pytest.raises(ProviderError, match='HTTP 500'):
            http.create('Instance', {})

    def test_create_without_id(self, http, session):
        session.request.return_value = _response(201, {'attributes': {}})
        with pytest.raises(ProviderError, match='no id'):
            http.create('Instance', {})

    def test_timeout(self, http, session):
        session.request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(ProviderTimeout) as exc_info:
            http.create('Instance', {})
        assert exc_info.value.operation == 'create'

    def test_connection_error(self, http, session):
        session.request.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(ProviderError, match='cannot connect'):
            http.describe('Instance', 'i-1')

    def test_destroy_404_tolerated(self, http, session):
        session.request.return_value = _response(404, {'error': {'code': 'not_found'}})
        http.destroy('Instance', 'i-1')

    def test_destroy_failure(self, http, session):
        session.request.return_value = _response(403, {'error': {'code': 'forbidden', 'message': 'no'}})
        with pytest.raises(ProviderError, match='HTTP 403'):
            http.destroy('Instance', 'i-1')

    def test_string_error_body(self, http, session):
        session.request.return_value = _response(500, {'error': 'internal failure'})
        with pytest.raises(ProviderError, match=r'HTTP 500 \(500\): internal failure'):
            http.create('Instance', {})

    def test_list_error_body(self, http, session):
        session.request.return_value = _response(502, ['bad', 'gateway'])
        with pytest.raises(ProviderError, match='HTTP 502'):
            http.update('Instance', 'i-1', {})

    def test_list_success_body(self, http, session):
        session.request.return_value = _response(201, [{'id': 'i-1'}])
        with pytest.raises(ProviderError, match='must be a JSON object'):
            http.create('Instance', {})

    def test_non_object_attributes(self, http, session):
        session.request.return_value = _response(200, {'attributes': 'running'})
        with pytest.raises(ProviderError, match='attributes must be an object'):
            http.describe('Instance', 'i-1')

    def test_malformed_error_fails_node_during_apply(self, http, session, store, base_inputs):
        session.request.return_value = _response(500, {'error': 'internal failure'})
        with pytest.raises(PartialFailure) as exc_info:
            Reconciler(provider=http, store=store).apply(stack.prepare(base_inputs), store.load('web'))
        assert list(exc_info.value.failed) == ['SecurityGroup']
        assert exc_info.value.skipped == ['Instance']
        assert store.load('web').get_node('SecurityGroup').status == 'failed'


class TestCreateProvider:
    """Tests for create_provider()."""

    def test_memory(self, tmp_path):
        provider = create_provider(DriverSettings(memory_path=tmp_path / 'cloud.json'))
        assert isinstance(provider, InMemoryProvider)
        assert provider.path == tmp_path / 'cloud.json'

    def test_http(self):
        provider = create_provider(DriverSettings(provider='http', endpoint='https://x/v1',
                                                  token='t', timeout=10))
        assert isinstance(provider, HttpProvider)
        assert provider.timeout == 10
        assert provider.token == 't'
