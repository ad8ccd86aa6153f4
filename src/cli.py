#!/usr/bin/env python3
"""CLI entry point for topology-driver.

Verb subcommands over a resource graph:
- topology-driver plan -g web-stack
- topology-driver apply -g web-stack --var image=registry/app:1.4
"""

import logging
import subprocess
import sys
from pathlib import Path

VERB_COMMANDS = {
    "validate": "Validate graph structure and references",
    "plan": "Show what apply would change",
    "apply": "Create or update infrastructure from a graph",
    "destroy": "Destroy every resource recorded for a graph",
    "outputs": "Show graph outputs from the last run",
    "rotate": "Append a new version to a managed secret",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
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


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"topology-driver {get_version()}")
    print()
    print("Usage: topology-driver <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'topology-driver <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  topology-driver validate -g web-stack")
    print("  topology-driver plan -g web-stack")
    print("  topology-driver apply -g web-stack --var image=registry/app:1.4")
    print("  topology-driver rotate -g web-stack --secret db-password")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from provision import cli as verbs

    handlers = {
        "validate": verbs.validate_main,
        "plan": verbs.plan_main,
        "apply": verbs.apply_main,
        "destroy": verbs.destroy_main,
        "outputs": verbs.outputs_main,
        "rotate": verbs.rotate_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv=None):
    """CLI entry point."""
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ('-h', '--help'):
        print_usage()
        return 0
    if args[0] == '--version':
        print(f"topology-driver {get_version()}")
        return 0

    verb = args[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    return dispatch_verb(verb, args[1:])


if __name__ == '__main__':
    sys.exit(main())
