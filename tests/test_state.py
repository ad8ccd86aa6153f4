"""Tests for provision.state module."""

import json
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from provision.errors import InvalidTransitionError, StateLockError
from provision.state import ResourceState, Snapshot, StateStore, Status
from resources import SecretToken


class TestResourceState:
    """Tests for status transitions."""

    def test_happy_path(self):
        state = ResourceState(id='db', kind='managed-database')
        assert state.transition(Status.CREATING) == Status.PENDING
        assert state.started_at is not None
        assert state.transition(Status.WAITING) == Status.CREATING
        assert state.ready({'id': 'x'}) == Status.WAITING
        assert state.status == Status.READY
        assert state.observed == {'id': 'x'}
        assert state.duration is not None

    def test_noop_goes_straight_to_ready(self):
        state = ResourceState(id='net', kind='network')
        state.ready({'id': 'n'})
        assert state.status == Status.READY

    def test_replace_path(self):
        state = ResourceState(id='sub', kind='subnet')
        state.transition(Status.DESTROYING)
        state.transition(Status.CREATING)
        state.ready({})
        assert state.status == Status.READY

    @pytest.mark.parametrize('start, target', [
        (Status.READY, Status.CREATING),
        (Status.FAILED, Status.READY),
        (Status.WAITING, Status.CREATING),
        (Status.CREATING, Status.PENDING),
        (Status.DESTROYED, Status.CREATING),
    ])
    def test_no_regression(self, start, target):
        state = ResourceState(id='a', kind='network', status=start)
        with pytest.raises(InvalidTransitionError, match='illegal transition'):
            state.transition(target)

    def test_fail_records_error_type(self):
        state = ResourceState(id='a', kind='network', status=Status.CREATING)
        state.fail(ValueError('quota exceeded'))
        assert state.status == Status.FAILED
        assert state.error == 'quota exceeded'
        assert state.error_type == 'ValueError'

    def test_dict_round_trip(self):
        state = ResourceState(id='a', kind='network', status=Status.READY,
                              observed={'id': 'n'}, depends_on=['b'])
        restored = ResourceState.from_dict(state.to_dict())
        assert restored.status == Status.READY
        assert restored.observed == {'id': 'n'}
        assert restored.depends_on == ['b']
        assert restored.tainted is False

    def test_tainted_flag_persisted(self):
        state = ResourceState(id='a', kind='network', status=Status.FAILED, tainted=True)
        assert state.to_dict()['tainted'] is True
        assert ResourceState.from_dict(state.to_dict()).tainted is True
        assert 'tainted' not in ResourceState(id='b', kind='network').to_dict()


class TestSnapshot:
    """Tests for Snapshot accessors."""

    def test_observed_only_for_known_resources(self):
        snapshot = Snapshot('g', resources={
            'a': ResourceState('a', 'network', Status.READY, observed={'id': 'n'}),
            'b': ResourceState('b', 'network', Status.FAILED),
        })
        assert snapshot.observed('a') == {'id': 'n'}
        assert snapshot.observed('b') is None
        assert snapshot.observed('c') is None


class TestStateStore:
    """Tests for persistence and locking."""

    def test_load_missing_is_empty(self, tmp_path):
        snapshot = StateStore(tmp_path, 'web').load()
        assert snapshot.graph_name == 'web'
        assert snapshot.resources == {}

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path, 'web')
        snapshot = Snapshot('web', resources={
            'a': ResourceState('a', 'network', Status.READY, observed={'id': 'n'}),
        })
        path = store.save(snapshot)
        assert path == tmp_path / 'web' / 'state.json'
        assert snapshot.serial == 1

        loaded = store.load()
        assert loaded.serial == 1
        assert loaded.observed('a') == {'id': 'n'}
        # No temp files left behind
        assert [p.name for p in path.parent.iterdir() if p.name.startswith('.state-')] == []

    def test_tokens_rendered_in_state(self, tmp_path):
        store = StateStore(tmp_path, 'web')
        snapshot = Snapshot('web', resources={
            'u': ResourceState('u', 'database-user', Status.READY,
                               observed={'password': SecretToken('pw', 2)}),
        })
        store.save(snapshot)
        data = json.loads(store.path.read_text())
        assert data['resources']['u']['observed']['password'] == 'pw@2'

    def test_refuses_unknown_objects(self, tmp_path):
        store = StateStore(tmp_path, 'web')
        snapshot = Snapshot('web', resources={
            'a': ResourceState('a', 'network', Status.READY, observed={'x': object()}),
        })
        with pytest.raises(TypeError, match='Refusing to persist'):
            store.save(snapshot)
        assert not store.path.exists()

    def test_lock_is_exclusive_between_threads(self, tmp_path):
        holder = StateStore(tmp_path, 'web', lock_timeout=5)
        contender = StateStore(tmp_path, 'web', lock_timeout=0.2)
        errors = []

        def try_lock():
            try:
                with contender.lock():
                    pass
            except StateLockError as e:
                errors.append(e)

        with holder.lock():
            t = threading.Thread(target=try_lock)
            t.start()
            t.join()

        assert len(errors) == 1
        assert 'locked by another run' in str(errors[0])

        # Released afterwards
        with contender.lock():
            pass
