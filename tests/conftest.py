"""Shared pytest fixtures for stack-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from providers.memory import InMemoryProvider  # noqa: E402
from stack_opr.state import StateStore  # noqa: E402

SSH_KEY = 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIB4p3ZoD2x1pYh5rQ0D7S3hx7cdEexample user@host'


@pytest.fixture
def base_inputs():
    """Minimal valid inputs (every optional node off)."""
    return {
        'name': 'web',
        'ami_id': 'ami-0abcdef1234567890',
        'subnet_id': 'subnet-0123456789abcdef0',
        'vpc_id': 'vpc-0123456789abcdef0',
    }


@pytest.fixture
def full_inputs(base_inputs):
    """Inputs with every optional node present."""
    return {
        **base_inputs,
        'create_key_pair': True,
        'ssh_public_key': SSH_KEY,
        'create_cpu_alarm': True,
        'ingress_rules': [
            {'from_port': 22, 'to_port': 22, 'protocol': 'tcp',
             'cidr_blocks': ['198.51.100.0/24'], 'description': 'SSH'},
        ],
        'additional_volumes': [
            {'device_name': '/dev/sdb', 'volume_type': 'gp3', 'volume_size': 100, 'encrypted': True},
        ],
        'tags': {'Environment': 'test'},
    }


@pytest.fixture
def provider():
    """In-memory provider that records every call."""
    return InMemoryProvider()


@pytest.fixture
def store(tmp_path):
    """State store in a temporary directory."""
    return StateStore(tmp_path / 'states' / 'web' / 'state.json')


@pytest.fixture
def settings_file(tmp_path):
    """Driver settings file using the memory provider under tmp_path."""
    path = tmp_path / 'stack-driver.yaml'
    path.write_text(f"""
provider: memory
memory_path: {tmp_path / 'cloud.json'}
state_dir: {tmp_path / 'states'}
timeout: 30
""")
    return path


@pytest.fixture
def inputs_file(tmp_path):
    """Inputs file for the CLI (key pair and alarm off)."""
    path = tmp_path / 'web.yaml'
    path.write_text("""
name: web
ami_id: ami-0abcdef1234567890
subnet_id: subnet-0123456789abcdef0
vpc_id: vpc-0123456789abcdef0
key_name: ops-key
ingress_rules:
  - from_port: 443
    to_port: 443
    protocol: tcp
    cidr_blocks: [0.0.0.0/0]
""")
    return path
