#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Supports noun-action subcommands:
- stack-driver stack apply -i web.yaml
- stack-driver stack destroy -i web.yaml --yes

Nouns:
- stack: Stack lifecycle (validate/plan/apply/destroy/output)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (validate/plan/apply/destroy/output)",
}

STACK_ACTIONS = {
    "validate": "Validate inputs and the resource graph",
    "plan": "Show the changes apply would make",
    "apply": "Create or update the stack",
    "destroy": "Destroy every resource of the stack",
    "output": "Show stack outputs from state",
}


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-i', 'web.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stack-driver stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'stack-driver stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    if action in STACK_ACTIONS:
        # Lazy import keeps --help fast
        from stack_opr import cli as stack_cli
        handler = getattr(stack_cli, f"{action}_main")
        rc: int = handler(argv[1:])
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(STACK_ACTIONS)}")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stack-driver {get_version()}")
    print()
    print("Usage: stack-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stack-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stack-driver stack validate -i web.yaml")
    print("  stack-driver stack plan -i web.yaml --var instance_type=t3.small")
    print("  stack-driver stack apply -i web.yaml --replace Instance")
    print("  stack-driver stack destroy -i web.yaml --yes")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ('--help', '-h'):
        print_usage()
        return 0

    if args[0] == '--version':
        print(f"stack-driver {get_version()}")
        return 0

    if args[0] in NOUN_COMMANDS:
        return dispatch_noun(args[0], args[1:])

    print(f"Error: Unknown command '{args[0]}'")
    print()
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
