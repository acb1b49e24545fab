"""Tests for stack_opr.plan module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import stack
from stack_opr.executor import Reconciler
from stack_opr.lifecycle import Action
from stack_opr.plan import build_plan, format_plan, teardown_order
from stack_opr.resolver import UNKNOWN
from stack_opr.state import StackState


@pytest.fixture
def converged(provider, store, full_inputs):
    """State after a successful apply of full_inputs."""
    Reconciler(provider=provider, store=store).apply(stack.prepare(full_inputs), store.load('web'))
    return store.load('web')


def _actions(plan):
    return {c.node: c.action for c in plan}


class TestPlanFromEmptyState:
    """Planning against an empty state."""

    def test_everything_created(self, full_inputs):
        plan = build_plan(stack.prepare(full_inputs), StackState('web'))
        assert [c.node for c in plan] == ['SecurityGroup', 'KeyPair', 'Instance', 'Alarm']
        assert set(_actions(plan).values()) == {Action.CREATE}
        assert plan.has_changes
        assert plan.summary()['create'] == 4

    def test_unknown_and_known_references(self, full_inputs):
        plan = build_plan(stack.prepare(full_inputs), StackState('web'))
        instance = plan.get('Instance').attributes
        assert instance['vpc_security_group_ids'] == [UNKNOWN]
        assert instance['key_name'] == 'web-key'
        assert plan.get('Alarm').attributes['dimensions'] == {'InstanceId': UNKNOWN}


class TestPlanAgainstState:
    """Planning against converged state."""

    def test_unchanged_is_noop(self, converged, full_inputs):
        plan = build_plan(stack.prepare(full_inputs), converged)
        assert set(_actions(plan).values()) == {Action.NOOP}
        assert not plan.has_changes

    def test_user_data_change_is_noop(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'user_data': '#!/bin/sh\necho hi'}), converged)
        assert plan.action('Instance') == Action.NOOP

    def test_instance_type_change_is_update(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'instance_type': 't3.large'}), converged)
        change = plan.get('Instance')
        assert change.action == Action.UPDATE
        assert change.changed == ('instance_type',)
        assert plan.action('Alarm') == Action.NOOP

    def test_ami_change_is_replace(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'ami_id': 'ami-0fedcba9876543210'}), converged)
        assert plan.action('Instance') == Action.REPLACE
        # New instance id is unknown, so the alarm dimensions change
        assert plan.action('Alarm') == Action.UPDATE

    def test_security_group_replace_repoints_instance(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'security_group_description': 'changed'}),
                          converged)
        assert plan.action('SecurityGroup') == Action.REPLACE
        instance = plan.get('Instance')
        assert instance.action == Action.UPDATE
        assert instance.changed == ('vpc_security_group_ids',)

    def test_removed_node_is_deleted(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'create_cpu_alarm': False}), converged)
        assert plan.changes[-1].node == 'Alarm'
        assert plan.action('Alarm') == Action.DELETE

    def test_ignore_overrides(self, converged, full_inputs):
        plan = build_plan(stack.prepare({**full_inputs, 'instance_type': 't3.large'}), converged,
                          ignore_overrides={'Instance': ['instance_type']})
        assert plan.action('Instance') == Action.NOOP

    def test_forced_replace_keeps_dependents(self, converged, full_inputs):
        plan = build_plan(stack.prepare(full_inputs), converged, replace=['KeyPair'])
        assert plan.action('KeyPair') == Action.REPLACE
        assert plan.action('Instance') == Action.NOOP

    def test_forced_replace_uses_configured_ignored_values(self, converged, full_inputs):
        ordered = stack.prepare({**full_inputs, 'user_data': 'echo two'})
        plan = build_plan(ordered, converged, replace=['Instance'])
        instance = plan.get('Instance')
        assert instance.action == Action.REPLACE
        assert instance.attributes['user_data'] == 'echo two'


class TestTeardownOrder:
    """Tests for teardown_order()."""

    def test_dependents_first(self):
        state = StackState('web')
        for name, deps in [('SecurityGroup', []), ('KeyPair', []),
                           ('Instance', ['KeyPair', 'SecurityGroup']), ('Alarm', ['Instance'])]:
            node = state.ensure_node(name, name)
            node.complete(f"id-{name}", {}, {}, deps)
        order = teardown_order(state, state.existing())
        assert order.index('Alarm') < order.index('Instance')
        assert order.index('Instance') < order.index('KeyPair')
        assert order.index('Instance') < order.index('SecurityGroup')

    def test_subset(self):
        state = StackState('web')
        state.ensure_node('A', 'T').complete('a', {}, {}, [])
        state.ensure_node('B', 'T').complete('b', {}, {}, ['A'])
        assert teardown_order(state, ['A']) == ['A']


class TestFormatPlan:
    """Tests for format_plan()."""

    def test_create_lines_mask_sensitive(self, full_inputs):
        ordered = stack.prepare({**full_inputs, 'user_data': 'secret'})
        state = StackState('web')
        lines = format_plan(build_plan(ordered, state), state, ordered.snapshot.sensitive)
        text = '\n'.join(lines)
        assert 'user_data = (sensitive)' in text
        assert 'secret' not in text
        assert 'Plan: 4 to create, 0 to update, 0 to replace, 0 to delete.' in text

    def test_update_lines_show_old_and_new(self, converged, full_inputs):
        ordered = stack.prepare({**full_inputs, 'instance_type': 't3.large'})
        lines = format_plan(build_plan(ordered, converged), converged)
        assert '        instance_type: "t3.micro" -> "t3.large"' in lines
