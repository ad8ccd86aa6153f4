#!/usr/bin/env python3
"""Tests for the CLI entry point and verb handlers.

Tests verify:
1. Top-level usage, version and unknown verbs
2. --var parsing
3. Exit codes for invalid graphs and settings
4. apply/plan/outputs/rotate/destroy against the local cloud
"""

import json
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from cli import VERB_COMMANDS, main
from config import ConfigError
from provision.cli import EXIT_FAILED, EXIT_INVALID, EXIT_OK, parse_vars

GRAPH_FILE = str(Path(__file__).parent.parent / 'graphs' / 'web-stack.yaml')


@pytest.fixture
def workdir(tmp_path):
    """Settings file tuned for fast local runs, plus a state directory."""
    config = tmp_path / 'topology.yaml'
    config.write_text(
        'poll_interval: 0.01\n'
        'retry:\n'
        '  max_attempts: 2\n'
        '  base_delay: 0.01\n'
        'consistency:\n'
        '  iam-binding:\n'
        '    min_delay: 0\n'
    )
    return tmp_path


def _run(workdir, verb, *extra):
    argv = [verb, '--graph-file', GRAPH_FILE, '--var', 'image=registry.local/web:1',
            '--config', str(workdir / 'topology.yaml'),
            '--state-dir', str(workdir / 'states'), *extra]
    return main(argv)


def _json(capsys):
    return json.loads(capsys.readouterr().out)


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        for verb in VERB_COMMANDS:
            assert verb in out

    def test_version(self, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.startswith('topology-driver ')

    def test_unknown_verb(self, capsys):
        assert main(['launch']) == 1
        assert "Unknown command 'launch'" in capsys.readouterr().out


class TestParseVars:
    """Tests for --var parsing."""

    def test_parses_pairs(self):
        assert parse_vars(['image=reg/app:1', 'region=eu=west']) == {
            'image': 'reg/app:1',
            'region': 'eu=west',
        }

    @pytest.mark.parametrize('item', ['image', '=value'])
    def test_rejects_malformed(self, item):
        with pytest.raises(ConfigError, match='expected NAME=VALUE'):
            parse_vars([item])


class TestValidate:
    """Tests for the validate verb."""

    def test_shipped_graph_is_valid(self, workdir, capsys):
        assert _run(workdir, 'validate', '--json-output') == EXIT_OK
        payload = _json(capsys)
        assert payload['valid'] is True
        assert payload['graph'] == 'web-stack'
        assert payload['resources'] == 13

    def test_missing_required_variable(self, capsys):
        assert main(['validate', '--graph-file', GRAPH_FILE]) == EXIT_INVALID
        assert 'image' in capsys.readouterr().err

    def test_missing_graph_file(self, tmp_path):
        assert main(['validate', '--graph-file', str(tmp_path / 'nope.yaml')]) == EXIT_INVALID

    def test_no_graph_given(self, capsys):
        assert main(['validate']) == EXIT_INVALID
        assert 'specify a graph' in capsys.readouterr().err

    def test_cycle_is_invalid(self, tmp_path, capsys):
        path = tmp_path / 'loop.yaml'
        path.write_text(
            'schema_version: 1\n'
            'name: loop\n'
            'resources:\n'
            '  - id: a\n'
            '    kind: network\n'
            '    depends_on: [b]\n'
            '  - id: b\n'
            '    kind: network\n'
            '    depends_on: [a]\n'
        )
        assert main(['validate', '--graph-file', str(path), '--json-output']) == EXIT_INVALID
        payload = _json(capsys)
        assert payload['valid'] is False
        assert 'cycle' in payload['error'].lower()


class TestLifecycle:
    """End-to-end runs against the local simulation cloud."""

    def test_plan_before_apply_creates_everything(self, workdir, capsys):
        assert _run(workdir, 'plan', '--json-output') == EXIT_OK
        plan = _json(capsys)
        assert plan['graph'] == 'web-stack'
        assert plan['summary']['noop'] == 0
        assert {e['action'] for e in plan['entries']} == {'create'}

    def test_apply_then_converged(self, workdir, capsys):
        assert _run(workdir, 'apply', '--json-output') == EXIT_OK
        result = _json(capsys)
        assert result['success'] is True
        assert {row['status'] for row in result['resources']} == {'ready'}
        assert result['outputs']['url'] == 'https://web.run.local'
        assert result['unavailable_outputs'] == []
        # Only the token reaches outputs
        assert result['outputs']['database']['password'].endswith('@1')

        assert _run(workdir, 'plan', '--json-output') == EXIT_OK
        plan = _json(capsys)
        assert plan['summary']['noop'] == 13

        assert _run(workdir, 'outputs', '--json-output') == EXIT_OK
        outputs = _json(capsys)
        assert outputs['outputs']['revision'] == 'web-00001'
        assert outputs['unavailable'] == []

    def test_dry_run_changes_nothing(self, workdir, capsys):
        assert _run(workdir, 'apply', '--dry-run') == EXIT_OK
        assert 'Plan for' in capsys.readouterr().out
        assert not (workdir / 'states' / 'web-stack' / 'cloud.json').exists()

    def test_rotate_rolls_dependents(self, workdir, capsys):
        assert _run(workdir, 'rotate', '--secret', 'db-password') == EXIT_INVALID
        assert 'nothing to rotate' in capsys.readouterr().err

        assert _run(workdir, 'apply') == EXIT_OK
        capsys.readouterr()

        assert _run(workdir, 'rotate', '--secret', 'db-password', '--json-output') == EXIT_OK
        assert _json(capsys)['version'].endswith('@2')

        assert _run(workdir, 'plan', '--json-output') == EXIT_OK
        entries = {e['resource_id']: e['action'] for e in _json(capsys)['entries']}
        assert entries['db-password'] == 'update'
        assert entries['network'] == 'noop'

        assert _run(workdir, 'apply', '--json-output') == EXIT_OK
        assert _json(capsys)['outputs']['database']['password'].endswith('@2')

        # Dependents were rolled onto the new version during apply
        cloud = json.loads((workdir / 'states' / 'web-stack' / 'cloud.json').read_text())
        assert cloud['resources']['db-user']['attributes']['password'].endswith('@2')
        assert cloud['resources']['service']['attributes']['env']['DB_PASSWORD'].endswith('@2')

    def test_rotate_unknown_resource(self, workdir, capsys):
        assert _run(workdir, 'rotate', '--secret', 'nope') == EXIT_INVALID

    def test_destroy_requires_confirmation(self, workdir, capsys):
        with patch('builtins.input', return_value='n'):
            assert _run(workdir, 'destroy') == EXIT_FAILED
        assert 'Aborted.' in capsys.readouterr().out

    def test_destroy_clears_outputs(self, workdir, capsys):
        assert _run(workdir, 'apply') == EXIT_OK
        assert _run(workdir, 'destroy', '--yes', '--json-output') == EXIT_OK
        capsys.readouterr()

        assert _run(workdir, 'outputs', '--json-output') == EXIT_FAILED
        assert 'url' in _json(capsys)['unavailable']

    def test_malformed_timeout_is_invalid(self, workdir, capsys):
        path = workdir / 'bad.yaml'
        path.write_text(
            'schema_version: 1\n'
            'name: bad\n'
            'resources:\n'
            '  - id: net\n'
            '    kind: network\n'
            '    timeouts:\n'
            '      operation: soon\n'
        )
        argv = ['--graph-file', str(path), '--config', str(workdir / 'topology.yaml'),
                '--state-dir', str(workdir / 'states')]
        assert main(['apply', *argv]) == EXIT_INVALID
        assert 'timeouts.operation must be a number' in capsys.readouterr().err
        assert main(['destroy', '--yes', *argv]) == EXIT_INVALID

    def test_invalid_parallelism(self, workdir):
        assert _run(workdir, 'apply', '--parallelism', '0') == EXIT_INVALID
