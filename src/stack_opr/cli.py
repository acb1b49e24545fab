"""CLI handlers for stack verb commands (validate, plan, apply, destroy, output).

Usage:
    stack-driver stack validate -i <inputs.yaml> [--var NAME=VALUE ...]
    stack-driver stack plan -i <inputs.yaml> [--json-output]
    stack-driver stack apply -i <inputs.yaml> [--dry-run] [--replace NODE] [--ignore-changes NODE.attr] [--refresh]
    stack-driver stack destroy -i <inputs.yaml> [--dry-run] [--yes]
    stack-driver stack output -i <inputs.yaml> [--json-output]
"""

import argparse
import json
import logging
import sys
import time
from typing import Any, Optional

import stack
from config import ConfigError, DriverSettings, load_settings
from errors import (
    BuildError,
    CycleError,
    PartialFailure,
    PreconditionError,
    ValidationError,
)
from providers import create_provider
from stack_opr.executor import Reconciler
from stack_opr.outputs import display_outputs, project
from stack_opr.plan import StackPlan, build_plan, format_plan, teardown_order
from stack_opr.resolver import OrderedPlan
from stack_opr.state import StackState, StateStore
from variables import load_inputs, parse_var_overrides

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stack-driver stack {verb}',
        description=description,
    )
    parser.add_argument(
        '--inputs', '-i',
        help='YAML file with stack inputs',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set or override one input (repeatable)',
    )
    parser.add_argument(
        '--state-file',
        help='State file (default: <state_dir>/<name>/state.json)',
    )
    parser.add_argument(
        '--config',
        help='Driver settings file (default: $STACK_DRIVER_CONFIG or ./stack-driver.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _print_errors(header: str, errors: list[str]) -> None:
    print(header, file=sys.stderr)
    for error in errors:
        print(f"  ✗ {error}", file=sys.stderr)


def _raw_inputs(args) -> Optional[dict]:
    """Inputs file merged with --var overrides, or None on error."""
    try:
        raw = load_inputs(args.inputs) if args.inputs else {}
        raw.update(parse_var_overrides(args.var))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None
    return raw


def _prepare(args) -> Optional[OrderedPlan]:
    """Validate inputs and resolve the graph, printing errors.

    Returns:
        OrderedPlan, or None if anything failed
    """
    raw = _raw_inputs(args)
    if raw is None:
        return None
    try:
        return stack.prepare(raw)
    except ValidationError as e:
        count = len(e.errors)
        _print_errors(f"Inputs have {count} validation error{'s' if count != 1 else ''}:", e.errors)
    except (BuildError, CycleError) as e:
        print(f"Error: {e}", file=sys.stderr)
    return None


def _settings(args) -> Optional[DriverSettings]:
    try:
        return load_settings(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _store(args, settings: DriverSettings, stack_name: str) -> StateStore:
    if args.state_file:
        return StateStore(args.state_file)
    return StateStore(settings.state_path(stack_name))


def _load_state(store: StateStore, stack_name: str) -> Optional[StackState]:
    try:
        return store.load(stack_name)
    except (ValueError, OSError) as e:
        print(f"Error loading state: {e}", file=sys.stderr)
        return None


def _ignore_overrides(settings: DriverSettings, pairs: list[str]) -> Optional[dict[str, list[str]]]:
    """Settings ignore_changes merged with NODE.attr options."""
    overrides = {node: list(attrs) for node, attrs in settings.ignore_changes.items()}
    for pair in pairs:
        node, sep, attr = pair.partition('.')
        if not sep or not node or not attr:
            print(f"Error: Invalid --ignore-changes '{pair}': expected NODE.attribute",
                  file=sys.stderr)
            return None
        overrides.setdefault(node, []).append(attr)
    return overrides


def _check_node_names(ordered: OrderedPlan, names, option: str) -> bool:
    unknown = [n for n in names if n not in ordered]
    if unknown:
        print(f"Error: {option} names nodes not present this run: {', '.join(unknown)}",
              file=sys.stderr)
        print(f"Present nodes: {', '.join(ordered.names)}", file=sys.stderr)
        return False
    return True


def _print_plan(title: str, plan: StackPlan, state: StackState, ordered: OrderedPlan) -> None:
    print("")
    print("=" * 65)
    print(f"  {title}: {plan.stack_name}")
    print(f"  Nodes: {' -> '.join(ordered.names)}")
    print("=" * 65)
    print("")
    for line in format_plan(plan, state, ordered.snapshot.sensitive):
        print(line)
    print("")


def _plan_json(plan: StackPlan) -> list[dict]:
    return [
        {
            'node': c.node,
            'kind': c.kind,
            'action': c.action.value,
            'changed': list(c.changed),
            'deposed': c.deposed,
        }
        for c in plan
    ]


def _emit_json(verb: str, success: bool, duration: float, **extra: Any) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(extra)
    print(json.dumps(output, indent=2, default=str))


def _results_json(reconciler: Reconciler) -> list[dict]:
    nodes = []
    for result in reconciler.results:
        node_data: dict[str, Any] = {
            'name': result.name,
            'action': result.action,
            'success': result.success,
            'duration': round(result.duration, 2),
        }
        if result.calls:
            node_data['calls'] = result.calls
        if result.message:
            node_data['error'] = result.message
        nodes.append(node_data)
    return nodes


def _print_outputs(outputs: dict) -> None:
    print("\nOutputs:")
    for name, value in outputs.items():
        print(f"  {name} = {json.dumps(value, default=str)}")


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb."""
    parser = _common_parser('validate', 'Validate stack inputs and resource graph')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    ordered = _prepare(args)
    if ordered is None:
        if args.json_output:
            _emit_json('validate', False, time.time() - start)
        return 1

    name = ordered.snapshot['name']
    if args.json_output:
        _emit_json('validate', True, time.time() - start, stack=name, nodes=ordered.names)
        return 0

    count = len(ordered)
    print(f"Stack '{name}' is valid ({count} node{'s' if count != 1 else ''}: "
          f"{', '.join(ordered.names)})")
    if args.verbose:
        for key, value in ordered.snapshot.redacted().items():
            print(f"  {key} = {json.dumps(value)}")
    return 0


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Show the changes apply would make')
    parser.add_argument(
        '--replace',
        action='append',
        default=[],
        metavar='NODE',
        help='Plan replacement of NODE regardless of changes (repeatable)',
    )
    parser.add_argument(
        '--ignore-changes',
        action='append',
        default=[],
        metavar='NODE.ATTR',
        help='Ignore changes to NODE.ATTR this run (repeatable)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    settings = _settings(args)
    ordered = _prepare(args) if settings else None
    if ordered is None or not _check_node_names(ordered, args.replace, '--replace'):
        return 1
    ignore = _ignore_overrides(settings, args.ignore_changes)
    if ignore is None:
        return 1

    name = ordered.snapshot['name']
    state = _load_state(_store(args, settings, name), name)
    if state is None:
        return 1

    plan = build_plan(ordered, state, replace=args.replace, ignore_overrides=ignore)
    if args.json_output:
        _emit_json('plan', True, time.time() - start, stack=name,
                   changes=_plan_json(plan), summary=plan.summary())
        return 0

    _print_plan('PLAN', plan, state, ordered)
    if not plan.has_changes:
        print("No changes. Infrastructure matches the configuration.")
    return 0


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', 'Create or update the stack')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--replace',
        action='append',
        default=[],
        metavar='NODE',
        help='Replace NODE regardless of changes (repeatable)',
    )
    parser.add_argument(
        '--ignore-changes',
        action='append',
        default=[],
        metavar='NODE.ATTR',
        help='Ignore changes to NODE.ATTR this run (repeatable)',
    )
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Describe existing resources first, re-creating any deleted out of band',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    settings = _settings(args)
    ordered = _prepare(args) if settings else None
    if ordered is None or not _check_node_names(ordered, args.replace, '--replace'):
        return 1
    ignore = _ignore_overrides(settings, args.ignore_changes)
    if ignore is None:
        return 1

    name = ordered.snapshot['name']
    store = _store(args, settings, name)
    state = _load_state(store, name)
    if state is None:
        return 1

    if args.dry_run:
        plan = build_plan(ordered, state, replace=args.replace, ignore_overrides=ignore)
        if args.json_output:
            _emit_json('apply', True, time.time() - start, stack=name, dry_run=True,
                       changes=_plan_json(plan), summary=plan.summary())
        else:
            _print_plan('DRY-RUN APPLY', plan, state, ordered)
        return 0

    logger.info(f"Applying stack '{name}' with provider '{settings.provider}'")
    reconciler = Reconciler(
        provider=create_provider(settings),
        store=store,
        timeout=settings.timeout,
        max_workers=settings.max_workers,
        refresh=args.refresh,
    )

    success = True
    try:
        state = reconciler.apply(ordered, state, replace=args.replace, ignore_overrides=ignore)
    except PreconditionError as e:
        success = False
        state = e.state or state
        print(f"Error: {e}", file=sys.stderr)
    except PartialFailure as e:
        success = False
        state = e.state
        _print_errors(f"Error: {e}", [f"{node}: {err}" for node, err in e.failed.items()])

    outputs = display_outputs(project(state, ordered, stack.OUTPUTS), stack.OUTPUTS)
    duration = time.time() - start
    if args.json_output:
        _emit_json('apply', success, duration, stack=name,
                   nodes=_results_json(reconciler), outputs=outputs)
    elif success:
        print(f"\nApply complete for '{name}' in {duration:.1f}s")
        _print_outputs(outputs)

    return 0 if success else 1


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy', 'Destroy every resource of the stack')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    settings = _settings(args)
    raw = _raw_inputs(args) if settings else None
    if raw is None:
        return 1
    name = raw.get('name')
    if not name or not isinstance(name, str):
        print("Error: destroy needs the stack name (set 'name' in inputs or --var name=...)",
              file=sys.stderr)
        return 1

    store = _store(args, settings, name)
    state = _load_state(store, name)
    if state is None:
        return 1

    existing = state.existing()
    if not existing:
        print(f"Nothing to destroy for stack '{name}'.")
        return 0

    if args.dry_run:
        print("")
        print("=" * 65)
        print(f"  DRY-RUN DESTROY: {name}")
        print("=" * 65)
        print("")
        for node in teardown_order(state, existing):
            ns = state.get_node(node)
            print(f"  - {node} ({ns.kind}): destroy {ns.id or ''}".rstrip())
        print("")
        return 0

    # Confirmation for destructive operation
    if not args.yes:
        print(f"\nWARNING: This will destroy all {len(existing)} resources of stack '{name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{name}' with provider '{settings.provider}'")
    reconciler = Reconciler(
        provider=create_provider(settings),
        store=store,
        timeout=settings.timeout,
        max_workers=settings.max_workers,
    )

    success = True
    try:
        reconciler.destroy(state)
    except PartialFailure as e:
        success = False
        _print_errors(f"Error: {e}", [f"{node}: {err}" for node, err in e.failed.items()])

    duration = time.time() - start
    if args.json_output:
        _emit_json('destroy', success, duration, stack=name, nodes=_results_json(reconciler))
    elif success:
        print(f"\nDestroy complete for '{name}' in {duration:.1f}s")

    return 0 if success else 1


def output_main(argv: list) -> int:
    """Handle 'stack output' verb."""
    parser = _common_parser('output', 'Show stack outputs from state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    settings = _settings(args)
    ordered = _prepare(args) if settings else None
    if ordered is None:
        return 1

    name = ordered.snapshot['name']
    state = _load_state(_store(args, settings, name), name)
    if state is None:
        return 1

    outputs = display_outputs(project(state, ordered, stack.OUTPUTS), stack.OUTPUTS)
    if args.json_output:
        print(json.dumps(outputs, indent=2, default=str))
    else:
        for output_name, value in outputs.items():
            print(f"{output_name} = {json.dumps(value, default=str)}")
    return 0
