"""Typed input declarations and validation.

A stack declares its inputs as ConfigValue records. validate() merges the
caller's raw inputs with declared defaults, type-checks every value, runs
every validation predicate and returns an immutable ConfigSnapshot. All
failures are collected and reported together so a user sees every problem
in one pass.

Supported type expressions:
    string, number, bool, any
    list(string), list(number), map(string)
    object           (one sub-record, fields declared on the ConfigValue)
    list(object)     (ordered sequence of sub-records)
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import yaml

from common import freeze, thaw
from config import ConfigError
from errors import ValidationError

logger = logging.getLogger(__name__)


class _Required:
    """Sentinel for inputs without a default."""

    def __repr__(self) -> str:
        return 'REQUIRED'


REQUIRED = _Required()

REDACTED = '(sensitive)'

SCALAR_TYPES = {'string', 'number', 'bool', 'any'}

YAML_NULLS = {'null', 'Null', 'NULL', '~'}


@dataclass(frozen=True)
class Validation:
    """A predicate over a value and the message reported when it fails."""
    condition: Callable[[Any], bool]
    error_message: str


@dataclass(frozen=True)
class Field:
    """A field of an object sub-record.

    Optional fields may be omitted; their defaults are filled in when the
    resource graph is resolved, not here.
    """
    name: str
    type: str
    optional: bool = False
    nullable: bool = False


@dataclass(frozen=True)
class ConfigValue:
    """A named, typed stack input.

    Attributes:
        name: Input name
        type: Type expression (see module docstring)
        default: Default value, or REQUIRED
        description: Human-readable description
        sensitive: Mask the value in logs and plan output
        nullable: Accept None as a value
        validations: Predicates over the whole value
        fields: Sub-record fields for object / list(object) inputs
        item_validations: Predicates applied to each list element
    """
    name: str
    type: str
    default: Any = REQUIRED
    description: str = ''
    sensitive: bool = False
    nullable: bool = False
    validations: tuple[Validation, ...] = ()
    fields: tuple[Field, ...] = ()
    item_validations: tuple[Validation, ...] = ()

    @property
    def required(self) -> bool:
        return self.default is REQUIRED


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable, validated set of input values for one evaluation run."""
    values: Mapping[str, Any]
    sensitive: frozenset = field(default_factory=frozenset)

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def as_dict(self) -> dict:
        """Plain (mutable) copy of all values."""
        return thaw(self.values)

    def redacted(self) -> dict:
        """Plain copy with sensitive values masked."""
        return {
            name: (REDACTED if name in self.sensitive and value not in (None, '') else thaw(value))
            for name, value in self.values.items()
        }


def _type_name(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, Mapping):
        return 'object'
    if isinstance(value, (list, tuple)):
        return 'list'
    return type(value).__name__


def _scalar_ok(value: Any, type_expr: str) -> bool:
    if type_expr == 'any':
        return True
    if type_expr == 'string':
        return isinstance(value, str)
    if type_expr == 'bool':
        return isinstance(value, bool)
    if type_expr == 'number':
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    raise ConfigError(f"Unknown type expression '{type_expr}'")


def _check_object(value: Any, fields: tuple[Field, ...], path: str, errors: list[str]) -> bool:
    if not isinstance(value, Mapping):
        errors.append(f"{path}: expected object, got {_type_name(value)}")
        return False

    ok = True
    declared = {f.name for f in fields}
    for key in value:
        if key not in declared:
            errors.append(f"{path}: unknown field '{key}'")
            ok = False

    for f in fields:
        if f.name not in value:
            if not f.optional:
                errors.append(f"{path}: missing required field '{f.name}'")
                ok = False
            continue
        item = value[f.name]
        if item is None and (f.nullable or f.optional):
            continue
        if not _check_type(item, f.type, (), f"{path}.{f.name}", errors):
            ok = False
    return ok


def _check_type(value: Any, type_expr: str, fields: tuple[Field, ...],
                path: str, errors: list[str]) -> bool:
    """Check value against a type expression, appending failures to errors."""
    if type_expr in SCALAR_TYPES:
        if _scalar_ok(value, type_expr):
            return True
        errors.append(f"{path}: expected {type_expr}, got {_type_name(value)}")
        return False

    if type_expr == 'object':
        return _check_object(value, fields, path, errors)

    if type_expr.startswith('list(') and type_expr.endswith(')'):
        if not isinstance(value, (list, tuple)):
            errors.append(f"{path}: expected {type_expr}, got {_type_name(value)}")
            return False
        inner = type_expr[5:-1]
        results = [_check_type(item, inner, fields, f"{path}[{i}]", errors)
                   for i, item in enumerate(value)]
        return all(results)

    if type_expr.startswith('map(') and type_expr.endswith(')'):
        if not isinstance(value, Mapping):
            errors.append(f"{path}: expected {type_expr}, got {_type_name(value)}")
            return False
        inner = type_expr[4:-1]
        results = [_check_type(item, inner, fields, f"{path}.{key}", errors)
                   for key, item in value.items()]
        return all(results)

    raise ConfigError(f"Unknown type expression '{type_expr}' for {path}")


def _run_validations(value: Any, validations: Iterable[Validation], path: str,
                     errors: list[str]) -> None:
    for validation in validations:
        try:
            passed = bool(validation.condition(value))
        except (TypeError, ValueError, KeyError) as e:
            logger.debug(f"Validation on {path} raised {e!r}, treating as failure")
            passed = False
        if not passed:
            errors.append(f"{path}: {validation.error_message}")


def validate(raw_inputs: Mapping[str, Any], declarations: Iterable[ConfigValue]) -> ConfigSnapshot:
    """Validate raw inputs against declarations.

    Args:
        raw_inputs: Caller-supplied values (from an inputs file and overrides)
        declarations: Declared stack inputs

    Returns:
        Immutable ConfigSnapshot with defaults applied

    Raises:
        ValidationError: Listing every failure found
    """
    declarations = list(declarations)
    declared = {d.name: d for d in declarations}
    errors: list[str] = []

    for name in raw_inputs:
        if name not in declared:
            errors.append(f"{name}: unknown input")

    values: dict[str, Any] = {}
    for decl in declarations:
        if decl.name in raw_inputs:
            value = raw_inputs[decl.name]
        elif decl.required:
            errors.append(f"{decl.name}: required input not set")
            continue
        else:
            value = thaw(decl.default)

        if value is None:
            if not decl.nullable:
                errors.append(f"{decl.name}: must not be null")
                continue
            values[decl.name] = None
            continue

        if decl.item_validations and decl.type.startswith('list(') and isinstance(value, (list, tuple)):
            # Items are type-checked and validated independently
            inner = decl.type[5:-1]
            items_ok = True
            for i, item in enumerate(value):
                path = f"{decl.name}[{i}]"
                if _check_type(item, inner, decl.fields, path, errors):
                    _run_validations(item, decl.item_validations, path, errors)
                else:
                    items_ok = False
            if not items_ok:
                continue
        elif not _check_type(value, decl.type, decl.fields, decl.name, errors):
            continue

        _run_validations(value, decl.validations, decl.name, errors)

        values[decl.name] = value

    if errors:
        raise ValidationError(errors)

    sensitive = frozenset(d.name for d in declarations if d.sensitive)
    snapshot = ConfigSnapshot(values=freeze(values), sensitive=sensitive)
    logger.debug(f"Validated {len(values)} inputs")
    return snapshot


def load_inputs(path: Path) -> dict:
    """Load raw inputs from a YAML (or JSON) file.

    Raises:
        ConfigError: If the file is missing or not a mapping
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Inputs file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in inputs file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Inputs file {path} must be a YAML object (dict)")
    return data


def parse_var_overrides(pairs: Optional[Iterable[str]]) -> dict:
    """Parse NAME=VALUE overrides, typing VALUE as a YAML scalar or flow value.

    Examples:
        create_key_pair=true      -> True
        root_volume_size=30       -> 30
        alarm_actions=[arn:a]     -> ['arn:a']
        name=web                  -> 'web'
        user_data=#!/bin/bash     -> '#!/bin/bash' (not a comment)
        key_name=null             -> None
    """
    overrides: dict[str, Any] = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ConfigError(f"Invalid override '{pair}': expected NAME=VALUE")
        name, raw = pair.split('=', 1)
        name = name.strip()
        if not name:
            raise ConfigError(f"Invalid override '{pair}': empty name")
        try:
            value = yaml.safe_load(raw) if raw != '' else ''
        except yaml.YAMLError:
            value = raw
        # A bare # starts a YAML comment; only explicit null literals mean null
        if value is None and raw.strip() not in YAML_NULLS:
            value = raw
        overrides[name] = value
    return overrides
