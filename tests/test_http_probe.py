"""Tests for providers.http_probe module."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from providers import HttpReadinessProbe, LocalCloud, LocalProvider
from providers.http_probe import check_url
from provision.errors import TransientProviderError
from resources import ResourceKind
from conftest import make_spec


def _response(status):
    resp = MagicMock()
    resp.status_code = status
    return resp


class TestCheckUrl:
    """Tests for a single probe."""

    @patch('providers.http_probe.requests.get')
    def test_ok(self, mock_get):
        mock_get.return_value = _response(200)
        ready, message = check_url('https://web.run.local/healthz')
        assert ready is True
        assert '200' in message
        mock_get.assert_called_once_with(
            'https://web.run.local/healthz', timeout=10.0, verify=True, allow_redirects=False,
        )

    @pytest.mark.parametrize('status', [204, 301, 302])
    @patch('providers.http_probe.requests.get')
    def test_other_success_and_redirects_are_ready(self, mock_get, status):
        mock_get.return_value = _response(status)
        ready, message = check_url('https://web.run.local')
        assert ready is True
        assert str(status) in message

    @patch('providers.http_probe.requests.get')
    def test_explicit_expected_status(self, mock_get):
        mock_get.return_value = _response(302)
        assert check_url('https://web.run.local', expected_status=(200,))[0] is False

    @patch('providers.http_probe.requests.get')
    def test_not_found_is_not_ready(self, mock_get):
        mock_get.return_value = _response(404)
        ready, message = check_url('https://web.run.local')
        assert ready is False
        assert 'Unexpected response' in message

    @pytest.mark.parametrize('status', [429, 502, 503])
    @patch('providers.http_probe.requests.get')
    def test_server_errors_are_transient(self, mock_get, status):
        mock_get.return_value = _response(status)
        with pytest.raises(TransientProviderError):
            check_url('https://web.run.local')

    @patch('providers.http_probe.requests.get')
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError('refused')
        ready, message = check_url('https://web.run.local')
        assert ready is False
        assert 'Cannot connect' in message

    @patch('providers.http_probe.requests.get')
    def test_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        assert check_url('https://web.run.local')[0] is False


class TestHttpReadinessProbe:
    """Tests for the probe wrapper around a provider client."""

    def _probe(self):
        client = LocalProvider(LocalCloud(), ResourceKind.COMPUTE_SERVICE)
        return HttpReadinessProbe(client, path='/healthz')

    @patch('providers.http_probe.requests.get')
    def test_probes_observed_uri(self, mock_get):
        mock_get.return_value = _response(200)
        probe = self._probe()
        probe.create(make_spec('svc', 'compute-service', {'name': 'web'}))
        assert probe.is_ready('svc') is True
        assert mock_get.call_args[0][0] == 'https://web.run.local/healthz'

    @patch('providers.http_probe.requests.get')
    def test_missing_resource_not_ready(self, mock_get):
        assert self._probe().is_ready('svc') is False
        mock_get.assert_not_called()

    def test_delegates_crud(self):
        probe = self._probe()
        spec = make_spec('svc', 'compute-service', {'name': 'web'})
        probe.create(spec)
        assert probe.read('svc')['name'] == 'web'
        probe.destroy('svc')
        assert probe.url_for('svc') is None
