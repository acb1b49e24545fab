#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. freeze/thaw produce read-only and plain copies
2. prune_nulls drops unset fields from payloads
3. call_with_timeout passes through results and errors, and times out
"""

import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import NodeResult, call_with_timeout, freeze, prune_nulls, thaw
from errors import ProviderError, ProviderTimeout


class TestFreeze:
    """Test freeze() and thaw()."""

    def test_nested_values_are_read_only(self):
        frozen = freeze({'tags': {'Env': 'test'}, 'rules': [{'port': 22}]})
        with pytest.raises(TypeError):
            frozen['tags']['Env'] = 'prod'
        assert isinstance(frozen['rules'], tuple)

    def test_thaw_gives_plain_containers(self):
        value = {'tags': {'Env': 'test'}, 'rules': [{'port': 22}]}
        thawed = thaw(freeze(value))
        assert thawed == value
        assert type(thawed['tags']) is dict
        assert type(thawed['rules']) is list

    def test_scalars_unchanged(self):
        assert freeze(5) == 5
        assert thaw('x') == 'x'


class TestPruneNulls:
    """Test prune_nulls()."""

    def test_drops_none_keys_recursively(self):
        value = {'a': 1, 'b': None, 'c': [{'iops': None, 'size': 8}]}
        assert prune_nulls(value) == {'a': 1, 'c': [{'size': 8}]}

    def test_keeps_list_items_and_falsy_values(self):
        assert prune_nulls({'l': [None, 0], 'f': False, 's': ''}) == {'l': [None, 0], 'f': False, 's': ''}


class TestCallWithTimeout:
    """Test call_with_timeout()."""

    def test_no_timeout_calls_directly(self):
        assert call_with_timeout(lambda a, b: a + b, 1, 2) == 3

    def test_returns_result_within_timeout(self):
        assert call_with_timeout(lambda: 'ok', timeout=5) == 'ok'

    def test_errors_propagate(self):
        def fail():
            raise ProviderError('boom', kind='Instance', operation='create')

        with pytest.raises(ProviderError, match='boom'):
            call_with_timeout(fail, timeout=5)

    def test_overrun_raises_provider_timeout(self):
        with pytest.raises(ProviderTimeout) as exc_info:
            call_with_timeout(time.sleep, 1.0, timeout=0.1, operation='create', kind='Instance')
        assert exc_info.value.operation == 'create'
        assert exc_info.value.kind == 'Instance'


class TestNodeResult:
    """Test NodeResult defaults."""

    def test_defaults(self):
        result = NodeResult(name='Instance', action='create', success=True)
        assert result.calls == []
        assert result.duration == 0.0
