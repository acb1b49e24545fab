"""Instance stack declaration.

Declares the stack's inputs, its four resource nodes and its outputs:

    SecurityGroup  always present, create-before-destroy
    KeyPair        present iff create_key_pair
    Instance       always present; uses SecurityGroup.id and (when created
                   here) KeyPair.key_name; user_data changes are ignored
    Alarm          present iff create_cpu_alarm; watches Instance.id

Apart from prepare(), everything in this module is data; the engine in
stack_opr interprets it.
"""

from stack_opr.graph import Lookup, NodeDeclaration, Reference, build
from stack_opr.lifecycle import Lifecycle, Precondition
from stack_opr.outputs import OutputDeclaration
from stack_opr.resolver import OrderedPlan, resolve
from variables import ConfigValue, Field, Validation, validate

ROOT_VOLUME_TYPES = ('standard', 'gp2', 'gp3', 'io1', 'io2')
VOLUME_TYPES = ('standard', 'gp2', 'gp3', 'io1', 'io2', 'st1', 'sc1')
RULE_PROTOCOLS = ('tcp', 'udp', 'icmp', 'icmpv6', 'all', '-1')
METADATA_HTTP_TOKENS = ('required', 'optional')


def _is_int(value) -> bool:
    return isinstance(value, int) or (isinstance(value, float) and value.is_integer())


def _port_ok(port) -> bool:
    return _is_int(port) and -1 <= port <= 65535


RULE_FIELDS = (
    Field('from_port', 'number'),
    Field('to_port', 'number'),
    Field('protocol', 'string'),
    Field('cidr_blocks', 'list(string)', optional=True),
    Field('ipv6_cidr_blocks', 'list(string)', optional=True),
    Field('security_groups', 'list(string)', optional=True),
    Field('description', 'string', optional=True),
)

RULE_VALIDATIONS = (
    Validation(lambda r: str(r['protocol']).lower() in RULE_PROTOCOLS,
               f"protocol must be one of: {', '.join(RULE_PROTOCOLS)}"),
    Validation(lambda r: _port_ok(r['from_port']) and _port_ok(r['to_port']),
               "from_port and to_port must be whole numbers between -1 and 65535"),
    Validation(lambda r: r['from_port'] <= r['to_port'],
               "from_port must not be greater than to_port"),
    Validation(lambda r: any(r.get(k) for k in ('cidr_blocks', 'ipv6_cidr_blocks', 'security_groups')),
               "at least one of cidr_blocks, ipv6_cidr_blocks or security_groups must be set"),
)

VOLUME_FIELDS = (
    Field('device_name', 'string'),
    Field('volume_type', 'string'),
    Field('volume_size', 'number'),
    Field('encrypted', 'bool', optional=True),
    Field('delete_on_termination', 'bool', optional=True),
    Field('iops', 'number', optional=True, nullable=True),
    Field('throughput', 'number', optional=True, nullable=True),
    Field('kms_key_id', 'string', optional=True, nullable=True),
)

VOLUME_VALIDATIONS = (
    Validation(lambda v: v['volume_type'] in VOLUME_TYPES,
               f"volume_type must be one of: {', '.join(VOLUME_TYPES)}"),
    Validation(lambda v: 1 <= v['volume_size'] <= 16384,
               "volume_size must be between 1 and 16384 GiB"),
    Validation(lambda v: v['device_name'].startswith('/dev/'),
               "device_name must start with /dev/"),
    Validation(lambda v: v.get('iops') is None or v['iops'] > 0,
               "iops must be positive when set"),
    Validation(lambda v: v.get('throughput') is None or v['volume_type'] == 'gp3',
               "throughput can only be set for gp3 volumes"),
)

INPUTS = (
    ConfigValue(
        'name', 'string',
        description='Name prefix for every resource in the stack',
        validations=(Validation(lambda v: 1 <= len(v) <= 200,
                                "name must be between 1 and 200 characters"),),
    ),
    ConfigValue(
        'ami_id', 'string',
        description='AMI to launch the instance from',
        validations=(Validation(lambda v: v.startswith('ami-'), "ami_id must start with 'ami-'"),),
    ),
    ConfigValue('instance_type', 'string', default='t3.micro',
                description='Instance type'),
    ConfigValue('subnet_id', 'string', description='Subnet to launch the instance in'),
    ConfigValue('vpc_id', 'string', description='VPC for the security group'),
    ConfigValue('associate_public_ip_address', 'bool', default=False,
                description='Give the instance a public IP address'),
    ConfigValue('private_ip', 'string', default=None, nullable=True,
                description='Fixed private IP address (optional)'),
    ConfigValue('iam_instance_profile', 'string', default=None, nullable=True,
                description='IAM instance profile name (optional)'),
    ConfigValue('key_name', 'string', default=None, nullable=True,
                description='Existing key pair name, used when create_key_pair is false'),
    ConfigValue('create_key_pair', 'bool', default=False,
                description='Create a key pair from ssh_public_key'),
    ConfigValue('ssh_public_key', 'string', default='',
                description='Public key material for the created key pair'),
    ConfigValue('security_group_description', 'string', default='Managed by stack-driver',
                description='Security group description'),
    ConfigValue('ingress_rules', 'list(object)', default=[], fields=RULE_FIELDS,
                item_validations=RULE_VALIDATIONS,
                description='Ingress rules, in payload order'),
    ConfigValue('egress_rules', 'list(object)', fields=RULE_FIELDS,
                item_validations=RULE_VALIDATIONS,
                default=[{
                    'from_port': 0,
                    'to_port': 0,
                    'protocol': '-1',
                    'cidr_blocks': ['0.0.0.0/0'],
                    'description': 'Allow all outbound traffic',
                }],
                description='Egress rules, in payload order'),
    ConfigValue(
        'root_volume_type', 'string', default='gp3',
        description='Root volume type',
        validations=(Validation(lambda v: v in ROOT_VOLUME_TYPES,
                                f"root_volume_type must be one of: {', '.join(ROOT_VOLUME_TYPES)}"),),
    ),
    ConfigValue(
        'root_volume_size', 'number', default=20,
        description='Root volume size in GiB',
        validations=(Validation(lambda v: v >= 8, "root_volume_size must be at least 8 GiB"),),
    ),
    ConfigValue('root_volume_encrypted', 'bool', default=True,
                description='Encrypt the root volume'),
    ConfigValue('additional_volumes', 'list(object)', default=[], fields=VOLUME_FIELDS,
                item_validations=VOLUME_VALIDATIONS,
                description='Additional EBS volumes attached at launch'),
    ConfigValue('user_data', 'string', default=None, nullable=True, sensitive=True,
                description='User data script (changes after creation are ignored)'),
    ConfigValue('enable_monitoring', 'bool', default=False,
                description='Enable detailed (1-minute) monitoring'),
    ConfigValue('disable_api_termination', 'bool', default=False,
                description='Enable termination protection'),
    ConfigValue(
        'metadata_http_tokens', 'string', default='required',
        description='IMDSv2 token requirement',
        validations=(Validation(lambda v: v in METADATA_HTTP_TOKENS,
                                "metadata_http_tokens must be 'required' or 'optional'"),),
    ),
    ConfigValue(
        'metadata_hop_limit', 'number', default=1,
        description='Metadata PUT response hop limit',
        validations=(Validation(lambda v: _is_int(v) and 1 <= v <= 64,
                                "metadata_hop_limit must be a whole number between 1 and 64"),),
    ),
    ConfigValue('create_cpu_alarm', 'bool', default=False,
                description='Create a CPU utilization alarm for the instance'),
    ConfigValue(
        'alarm_cpu_threshold', 'number', default=80,
        description='CPU utilization percentage that triggers the alarm',
        validations=(Validation(lambda v: 0 <= v <= 100,
                                "alarm_cpu_threshold must be between 0 and 100"),),
    ),
    ConfigValue(
        'alarm_period', 'number', default=300,
        description='Alarm evaluation period in seconds',
        validations=(
            Validation(lambda v: v >= 60, "alarm_period must be at least 60 seconds"),
            Validation(lambda v: _is_int(v) and v % 60 == 0,
                       "alarm_period must be a multiple of 60"),
        ),
    ),
    ConfigValue(
        'alarm_evaluation_periods', 'number', default=2,
        description='Consecutive periods above threshold before alarming',
        validations=(Validation(lambda v: _is_int(v) and v >= 1,
                                "alarm_evaluation_periods must be a whole number of at least 1"),),
    ),
    ConfigValue('alarm_actions', 'list(string)', default=[],
                description='ARNs notified when the alarm fires'),
    ConfigValue('tags', 'map(string)', default={},
                description='Tags applied to every resource'),
)


def _rule(rule) -> dict:
    return {
        'from_port': rule['from_port'],
        'to_port': rule['to_port'],
        'protocol': str(rule['protocol']).lower(),
        'cidr_blocks': Lookup(rule, 'cidr_blocks', []),
        'ipv6_cidr_blocks': Lookup(rule, 'ipv6_cidr_blocks', []),
        'security_groups': Lookup(rule, 'security_groups', []),
        'description': Lookup(rule, 'description'),
    }


def _security_group(s) -> dict:
    return {
        'name_prefix': f"{s['name']}-sg-",
        'description': s['security_group_description'],
        'vpc_id': s['vpc_id'],
        'ingress': [_rule(r) for r in s['ingress_rules']],
        'egress': [_rule(r) for r in s['egress_rules']],
    }


def _key_pair(s) -> dict:
    return {
        'key_name': f"{s['name']}-key",
        'public_key': s['ssh_public_key'],
    }


def _volume(v) -> dict:
    return {
        'device_name': v['device_name'],
        'volume_type': v['volume_type'],
        'volume_size': v['volume_size'],
        'encrypted': Lookup(v, 'encrypted', True),
        'delete_on_termination': Lookup(v, 'delete_on_termination', True),
        'iops': Lookup(v, 'iops'),
        'throughput': Lookup(v, 'throughput'),
        'kms_key_id': Lookup(v, 'kms_key_id'),
    }


def _instance(s) -> dict:
    if s['create_key_pair']:
        key_name = Reference('KeyPair', 'key_name')
    else:
        key_name = s['key_name']
    return {
        'ami': s['ami_id'],
        'instance_type': s['instance_type'],
        'subnet_id': s['subnet_id'],
        'vpc_security_group_ids': [Reference('SecurityGroup', 'id')],
        'key_name': key_name,
        'associate_public_ip_address': s['associate_public_ip_address'],
        'private_ip': s['private_ip'],
        'iam_instance_profile': s['iam_instance_profile'],
        'monitoring': s['enable_monitoring'],
        'disable_api_termination': s['disable_api_termination'],
        'user_data': s['user_data'],
        'metadata_options': {
            'http_endpoint': 'enabled',
            'http_tokens': s['metadata_http_tokens'],
            'http_put_response_hop_limit': s['metadata_hop_limit'],
        },
        'root_block_device': [{
            'volume_type': s['root_volume_type'],
            'volume_size': s['root_volume_size'],
            'encrypted': s['root_volume_encrypted'],
            'delete_on_termination': True,
        }],
        'ebs_block_device': [_volume(v) for v in s['additional_volumes']],
    }


def _alarm(s) -> dict:
    return {
        'alarm_name': f"{s['name']}-cpu-high",
        'alarm_description': f"CPU utilization above {s['alarm_cpu_threshold']}% on {s['name']}",
        'comparison_operator': 'GreaterThanThreshold',
        'evaluation_periods': s['alarm_evaluation_periods'],
        'metric_name': 'CPUUtilization',
        'namespace': 'AWS/EC2',
        'period': s['alarm_period'],
        'statistic': 'Average',
        'threshold': s['alarm_cpu_threshold'],
        'alarm_actions': list(s['alarm_actions']),
        'treat_missing_data': 'missing',
        'dimensions': {'InstanceId': Reference('Instance', 'id')},
    }


NODES = (
    NodeDeclaration(
        name='SecurityGroup',
        kind='SecurityGroup',
        attributes=_security_group,
        lifecycle=Lifecycle(
            create_before_destroy=True,
            replace_on=frozenset({'name_prefix', 'description', 'vpc_id'}),
        ),
        name_tag=lambda s: f"{s['name']}-sg",
    ),
    NodeDeclaration(
        name='KeyPair',
        kind='KeyPair',
        attributes=_key_pair,
        present=lambda s: s['create_key_pair'],
        lifecycle=Lifecycle(
            replace_on=frozenset({'key_name', 'public_key'}),
            preconditions=(Precondition(
                lambda s: bool((s['ssh_public_key'] or '').strip()),
                "ssh_public_key must be set when create_key_pair is true",
            ),),
        ),
        name_tag=lambda s: f"{s['name']}-key",
    ),
    NodeDeclaration(
        name='Instance',
        kind='Instance',
        attributes=_instance,
        lifecycle=Lifecycle(
            ignore_changes=frozenset({'user_data'}),
            replace_on=frozenset({
                'ami', 'subnet_id', 'key_name', 'private_ip',
                'associate_public_ip_address', 'root_block_device', 'ebs_block_device',
            }),
        ),
        name_tag=lambda s: s['name'],
    ),
    NodeDeclaration(
        name='Alarm',
        kind='Alarm',
        attributes=_alarm,
        present=lambda s: s['create_cpu_alarm'],
        depends_on=('Instance',),
        lifecycle=Lifecycle(
            replace_on=frozenset({'alarm_name'}),
            # Basic monitoring publishes 5-minute datapoints
            preconditions=(Precondition(
                lambda s: s['enable_monitoring'] or s['alarm_period'] >= 300,
                "alarm_period below 300 seconds requires enable_monitoring",
            ),),
        ),
        name_tag=lambda s: f"{s['name']}-cpu-high",
    ),
)


def _volume_ids(devices, snapshot) -> list:
    devices = list(devices or [])
    count = len(snapshot['additional_volumes'])
    return [devices[i].get('volume_id') if i < len(devices) else None for i in range(count)]


OUTPUTS = (
    OutputDeclaration('instance_id', 'Instance', 'id', 'Instance id'),
    OutputDeclaration('instance_arn', 'Instance', 'arn', 'Instance ARN'),
    OutputDeclaration('instance_state', 'Instance', 'instance_state', 'Instance state'),
    OutputDeclaration('private_ip', 'Instance', 'private_ip', 'Private IP address'),
    OutputDeclaration('public_ip', 'Instance', 'public_ip', 'Public IP address, if any'),
    OutputDeclaration('private_dns', 'Instance', 'private_dns', 'Private DNS name'),
    OutputDeclaration('public_dns', 'Instance', 'public_dns', 'Public DNS name, if any'),
    OutputDeclaration('availability_zone', 'Instance', 'availability_zone', 'Availability zone'),
    OutputDeclaration('security_group_id', 'SecurityGroup', 'id', 'Security group id'),
    OutputDeclaration('security_group_arn', 'SecurityGroup', 'arn', 'Security group ARN'),
    OutputDeclaration('key_pair_name', 'KeyPair', 'key_name',
                      'Key pair used by the instance (created or existing)',
                      fallback_input='key_name'),
    OutputDeclaration('key_pair_id', 'KeyPair', 'key_pair_id', 'Created key pair id'),
    OutputDeclaration('additional_volume_ids', 'Instance', 'ebs_block_device',
                      'Additional volume ids, in input order', transform=_volume_ids),
    OutputDeclaration('cpu_alarm_id', 'Alarm', 'id', 'CPU alarm id'),
    OutputDeclaration('cpu_alarm_arn', 'Alarm', 'arn', 'CPU alarm ARN'),
)


def prepare(raw_inputs: dict) -> OrderedPlan:
    """Validate raw inputs, build the graph and order it.

    Raises:
        ValidationError: If any input is invalid (nothing else is evaluated)
        BuildError: If the graph is structurally invalid
        CycleError: If the dependency graph is not acyclic
    """
    snapshot = validate(raw_inputs, INPUTS)
    return resolve(build(snapshot, list(NODES)))
