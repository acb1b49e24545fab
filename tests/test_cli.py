"""Tests for the CLI entry point and stack verbs."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cli import main
from stack_opr.state import StateStore


@pytest.fixture
def run(settings_file, inputs_file):
    """Run 'stack <verb>' against the memory provider settings and inputs file."""
    def _run(verb, *extra):
        return main(['stack', verb, '--config', str(settings_file), '-i', str(inputs_file), *extra])
    return _run


def _state(tmp_path):
    return StateStore(tmp_path / 'states' / 'web' / 'state.json').load('web')


class TestMain:
    """Top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: stack-driver <noun> <action>' in out
        assert 'stack' in out

    def test_unknown_command(self, capsys):
        assert main(['bogus']) == 1
        assert "Unknown command 'bogus'" in capsys.readouterr().out

    def test_stack_without_action(self, capsys):
        assert main(['stack']) == 1
        out = capsys.readouterr().out
        for action in ('validate', 'plan', 'apply', 'destroy', 'output'):
            assert action in out

    def test_unknown_stack_action(self, capsys):
        assert main(['stack', 'nope']) == 1
        assert "Unknown stack action 'nope'" in capsys.readouterr().out


class TestValidate:
    """stack validate."""

    def test_valid(self, run, capsys):
        assert run('validate') == 0
        assert "Stack 'web' is valid (2 nodes: SecurityGroup, Instance)" in capsys.readouterr().out

    def test_all_errors_reported(self, run, capsys):
        rc = run('validate', '--var', 'root_volume_size=7', '--var', 'metadata_hop_limit=0',
                 '--var', 'bogus=1')
        assert rc == 1
        err = capsys.readouterr().err
        assert 'validation errors' in err
        assert err.count('✗') == 3
        assert 'root_volume_size must be at least 8 GiB' in err
        assert 'bogus: unknown input' in err

    def test_json_output(self, run, capsys):
        assert run('validate', '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'validate'
        assert data['success'] is True
        assert data['nodes'] == ['SecurityGroup', 'Instance']

    def test_missing_inputs_file(self, settings_file, tmp_path, capsys):
        rc = main(['stack', 'validate', '--config', str(settings_file),
                   '-i', str(tmp_path / 'none.yaml')])
        assert rc == 1
        assert 'Inputs file not found' in capsys.readouterr().err


class TestPlan:
    """stack plan."""

    def test_plan_from_empty_state(self, run, capsys):
        assert run('plan') == 0
        out = capsys.readouterr().out
        assert 'PLAN: web' in out
        assert 'Plan: 2 to create, 0 to update, 0 to replace, 0 to delete.' in out

    def test_plan_json_after_apply(self, run, capsys):
        assert run('apply') == 0
        capsys.readouterr()
        assert run('plan', '--json-output', '--var', 'instance_type=t3.large') == 0
        data = json.loads(capsys.readouterr().out)
        actions = {c['node']: c['action'] for c in data['changes']}
        assert actions == {'SecurityGroup': 'no-op', 'Instance': 'update'}
        assert data['summary']['update'] == 1

    def test_replace_unknown_node(self, run, capsys):
        assert run('plan', '--replace', 'KeyPair') == 1
        assert 'not present this run' in capsys.readouterr().err

    def test_bad_ignore_changes(self, run, capsys):
        assert run('plan', '--ignore-changes', 'Instance') == 1
        assert 'expected NODE.attribute' in capsys.readouterr().err


class TestApply:
    """stack apply and stack output."""

    def test_apply_then_noop(self, run, capsys, tmp_path):
        assert run('apply') == 0
        out = capsys.readouterr().out
        assert "Apply complete for 'web'" in out
        assert 'key_pair_name = "ops-key"' in out
        state = _state(tmp_path)
        assert list(state.existing()) == ['SecurityGroup', 'Instance']
        serial = state.serial

        assert run('plan') == 0
        assert 'No changes.' in capsys.readouterr().out
        assert run('apply') == 0
        assert _state(tmp_path).serial == serial

    def test_dry_run_changes_nothing(self, run, capsys, tmp_path):
        assert run('apply', '--dry-run') == 0
        assert 'DRY-RUN APPLY: web' in capsys.readouterr().out
        assert _state(tmp_path).nodes == {}
        assert not (tmp_path / 'cloud.json').exists()

    def test_json_output(self, run, capsys):
        assert run('apply', '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert [n['name'] for n in data['nodes']] == ['SecurityGroup', 'Instance']
        assert data['outputs']['instance_id'].startswith('i-')
        assert data['outputs']['cpu_alarm_id'] is None

    def test_precondition_failure(self, run, capsys, tmp_path):
        rc = run('apply', '--var', 'create_cpu_alarm=true', '--var', 'alarm_period=60')
        assert rc == 1
        assert "Precondition failed for 'Alarm'" in capsys.readouterr().err
        assert 'Alarm' not in _state(tmp_path).existing()

    def test_replace_instance(self, run, capsys, tmp_path):
        assert run('apply') == 0
        old_id = _state(tmp_path).get_node('Instance').id
        assert run('apply', '--replace', 'Instance') == 0
        assert _state(tmp_path).get_node('Instance').id != old_id

    def test_output(self, run, capsys, tmp_path):
        assert run('apply') == 0
        capsys.readouterr()
        assert run('output', '--json-output') == 0
        outputs = json.loads(capsys.readouterr().out)
        assert outputs['instance_id'] == _state(tmp_path).get_node('Instance').id
        assert outputs['key_pair_name'] == 'ops-key'

    def test_explicit_state_file(self, run, tmp_path):
        state_file = tmp_path / 'elsewhere.json'
        assert run('apply', '--state-file', str(state_file)) == 0
        assert state_file.exists()
        assert _state(tmp_path).nodes == {}


class TestDestroy:
    """stack destroy."""

    def test_nothing_to_destroy(self, run, capsys):
        assert run('destroy', '--yes') == 0
        assert "Nothing to destroy for stack 'web'" in capsys.readouterr().out

    def test_destroy_with_yes(self, run, capsys, tmp_path):
        assert run('apply') == 0
        assert run('destroy', '--yes') == 0
        assert "Destroy complete for 'web'" in capsys.readouterr().out
        assert _state(tmp_path).nodes == {}
        cloud = json.loads((tmp_path / 'cloud.json').read_text())
        assert cloud['resources'] == {}

    def test_confirmation_declined(self, run, capsys, monkeypatch, tmp_path):
        assert run('apply') == 0
        monkeypatch.setattr('builtins.input', lambda prompt: 'n')
        assert run('destroy') == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert len(_state(tmp_path).existing()) == 2

    def test_dry_run_lists_dependents_first(self, run, capsys):
        assert run('apply') == 0
        capsys.readouterr()
        assert run('destroy', '--dry-run') == 0
        out = capsys.readouterr().out
        assert out.index('- Instance') < out.index('- SecurityGroup')

    def test_needs_name(self, settings_file, capsys):
        assert main(['stack', 'destroy', '--config', str(settings_file), '--yes']) == 1
        assert 'needs the stack name' in capsys.readouterr().err
