"""Tests for providers package (registry and the local simulation cloud)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import make_spec
from providers import LocalCloud, LocalProvider, ProviderClient, ProviderRegistry, local_registry
from providers.base import readiness_predicate
from provision.errors import PermanentProviderError, ResourceNotFound, ValidationError
from provision.secrets_mgr import MemorySecretStore, SecretLifecycleManager, SecretPolicy
from resources import ResourceKind, SecretToken


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_register_and_get(self):
        client = LocalProvider(LocalCloud(), ResourceKind.NETWORK)
        registry = ProviderRegistry()
        registry.register(ResourceKind.NETWORK, client)
        assert registry.get(ResourceKind.NETWORK) is client
        assert ResourceKind.NETWORK in registry
        assert isinstance(client, ProviderClient)

    def test_get_unknown(self):
        with pytest.raises(KeyError):
            ProviderRegistry().get(ResourceKind.NETWORK)

    def test_check_covers(self):
        registry = ProviderRegistry()
        registry.register(ResourceKind.NETWORK, LocalProvider(LocalCloud(), ResourceKind.NETWORK))
        registry.check_covers({ResourceKind.NETWORK})
        with pytest.raises(ValidationError, match='dashboard, subnet'):
            registry.check_covers({ResourceKind.NETWORK, ResourceKind.SUBNET, ResourceKind.DASHBOARD})

    def test_local_registry_covers_provider_kinds(self):
        registry = local_registry(LocalCloud())
        assert ResourceKind.SECRET_VERSION not in registry
        assert len(registry.kinds()) == len(ResourceKind) - 1
        # Readiness only where a predicate is expected
        assert readiness_predicate(registry.get(ResourceKind.MANAGED_DATABASE), 'db') is not None
        assert readiness_predicate(registry.get(ResourceKind.IAM_BINDING), 'b') is None


class TestLocalProvider:
    """Tests for CRUD against the local cloud."""

    def test_create_read_update_destroy(self):
        cloud = LocalCloud()
        client = LocalProvider(cloud, ResourceKind.COMPUTE_SERVICE)
        spec = make_spec('svc', 'compute-service', {'name': 'web', 'image': 'reg/web:1'})

        created = client.create(spec)
        assert created['uri'] == 'https://web.run.local'
        assert created['latest_revision'] == 'web-00001'
        assert client.read('svc') == created

        updated = client.update('svc', make_spec('svc', 'compute-service', {'name': 'web', 'image': 'reg/web:2'}))
        assert updated['image'] == 'reg/web:2'
        assert updated['latest_revision'] == 'web-00002'

        client.destroy('svc')
        with pytest.raises(ResourceNotFound):
            client.read('svc')
        # Destroying a missing resource is not an error
        client.destroy('svc')

    def test_create_twice_is_permanent_error(self):
        client = LocalProvider(LocalCloud(), ResourceKind.NETWORK)
        client.create(make_spec('net', 'network', {'name': 'n'}))
        with pytest.raises(PermanentProviderError, match='already exists'):
            client.create(make_spec('net', 'network', {'name': 'n'}))

    def test_update_missing(self):
        client = LocalProvider(LocalCloud(), ResourceKind.NETWORK)
        with pytest.raises(ResourceNotFound):
            client.update('net', make_spec('net', 'network'))

    def test_subnet_gateway(self):
        client = LocalProvider(LocalCloud(), ResourceKind.SUBNET)
        observed = client.create(make_spec('sub', 'subnet', {'ip_cidr_range': '10.8.0.0/24'}))
        assert observed['gateway_address'] == '10.8.0.1'

    def test_invalid_cidr(self):
        client = LocalProvider(LocalCloud(), ResourceKind.SUBNET)
        with pytest.raises(PermanentProviderError, match='Invalid ip_cidr_range'):
            client.create(make_spec('sub', 'subnet', {'ip_cidr_range': '10.8.0.0/99'}))

    def test_tokens_stored_as_strings(self):
        client = LocalProvider(LocalCloud(), ResourceKind.DATABASE_USER)
        observed = client.create(make_spec('u', 'database-user', {'password': SecretToken('pw', 1)}))
        assert observed['password'] == 'pw@1'

    def test_persisted_to_file(self, tmp_path):
        path = tmp_path / 'cloud.json'
        LocalProvider(LocalCloud(path), ResourceKind.NETWORK).create(make_spec('net', 'network', {'name': 'n'}))
        reloaded = LocalCloud(path)
        assert reloaded.ids() == ['net']
        assert LocalProvider(reloaded, ResourceKind.NETWORK).read('net')['name'] == 'n'


class TestLocalReadiness:
    """Tests for simulated consistency lag."""

    def test_ready_after_configured_polls(self):
        cloud = LocalCloud(readiness_polls={'managed-database': 2})
        client = local_registry(cloud).get(ResourceKind.MANAGED_DATABASE)
        client.create(make_spec('db', 'managed-database', {'name': 'db'}))
        assert [client.is_ready('db') for _ in range(3)] == [False, False, True]

    def test_poll_missing_resource(self):
        client = local_registry(LocalCloud()).get(ResourceKind.CONNECTOR)
        with pytest.raises(ResourceNotFound):
            client.is_ready('conn')


class TestLocalRuntimeBinding:
    """Tests for handing compute services their resolved environment."""

    def _manager(self):
        manager = SecretLifecycleManager(MemorySecretStore())
        token = manager.generate('db-password', SecretPolicy(length=24))
        return manager, token

    def test_tokens_resolved_at_deploy_and_not_stored(self):
        manager, token = self._manager()
        bound = []

        def runtime_env(env):
            resolved = manager.resolve_runtime_environment(env)
            bound.append(resolved)
            return resolved

        cloud = LocalCloud()
        client = local_registry(cloud, runtime_env=runtime_env).get(ResourceKind.COMPUTE_SERVICE)
        observed = client.create(make_spec('svc', 'compute-service', {
            'name': 'web',
            'env': {'DB_PASSWORD': token, 'MODE': 'prod'},
        }))

        raw = manager.store.access('db-password', 1).reveal()
        assert bound == [{'DB_PASSWORD': raw, 'MODE': 'prod'}]
        assert observed['env']['DB_PASSWORD'] == 'db-password@1'
        assert raw not in json.dumps(cloud.get('svc'))
        assert raw not in json.dumps(observed)

    def test_missing_version_is_permanent_error(self):
        manager, _ = self._manager()
        cloud = LocalCloud()
        client = LocalProvider(cloud, ResourceKind.COMPUTE_SERVICE,
                               runtime_env=manager.resolve_runtime_environment)
        spec = make_spec('svc', 'compute-service', {
            'name': 'web', 'env': {'DB_PASSWORD': SecretToken('db-password', 7)},
        })
        with pytest.raises(PermanentProviderError, match='missing secret version'):
            client.create(spec)
        assert cloud.ids() == []

    def test_update_rebinds(self):
        manager, token = self._manager()
        calls = []
        client = LocalProvider(LocalCloud(), ResourceKind.COMPUTE_SERVICE,
                               runtime_env=lambda env: calls.append(env) or {})
        client.create(make_spec('svc', 'compute-service', {'name': 'web', 'env': {'A': token}}))
        rotated = manager.rotate('db-password', SecretPolicy(length=24))
        client.update('svc', make_spec('svc', 'compute-service', {'name': 'web', 'env': {'A': rotated}}))
        assert [c['A'] for c in calls] == [token, rotated]

    def test_other_kinds_not_bound(self):
        calls = []
        client = LocalProvider(LocalCloud(), ResourceKind.DATABASE_USER,
                               runtime_env=lambda env: calls.append(env) or {})
        client.create(make_spec('u', 'database-user', {'env': {'A': 'b'}}))
        assert calls == []
