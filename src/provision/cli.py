"""CLI handlers for graph verbs (validate, plan, apply, destroy, outputs, rotate).

Usage:
    topology-driver validate -g <graph> [--var k=v ...]
    topology-driver plan -g <graph> [--json-output] [--no-refresh]
    topology-driver apply -g <graph> [--dry-run] [--parallelism N] [--json-output]
    topology-driver destroy -g <graph> [--dry-run] [--yes]
    topology-driver outputs -g <graph> [--json-output]
    topology-driver rotate -g <graph> --secret <resource-id>

Runs execute against the local simulation cloud; state, cloud records and
secret versions live under <state_dir>/<graph>/.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from config import ConfigError, EngineSettings, load_settings
from providers import HttpReadinessProbe, LocalCloud, local_registry
from provision.errors import ProvisionError, StateLockError, ValidationError
from provision.events import EventBus, log_subscriber
from provision.graph import ResourceGraph
from provision.outputs import outputs_to_json, unavailable_paths
from provision.plan import Action, Plan
from provision.reconciler import ApplyResult, Reconciler
from provision.secrets_mgr import FileSecretStore, SecretLifecycleManager
from provision.state import StateStore
from resources import ResourceKind, load_graph_document

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

_ACTION_SYMBOLS = {
    Action.NOOP: ' ',
    Action.CREATE: '+',
    Action.UPDATE: '~',
    Action.REPLACE: '-/+',
    Action.DESTROY: '-',
}


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'topology-driver {verb}',
        description=description,
    )
    parser.add_argument(
        '--graph', '-g',
        help='Graph name from graphs/',
    )
    parser.add_argument(
        '--graph-file',
        help='Path to graph file',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a graph variable (repeatable)',
    )
    parser.add_argument(
        '--config',
        help='Engine settings file (default: $TOPOLOGY_CONFIG or ./topology.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        type=Path,
        help='Override state directory',
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


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--parallelism', '-p',
        type=int,
        help='Max concurrent operations within a wave',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip reading live resources before planning',
    )
    parser.add_argument(
        '--http-probe',
        metavar='PATH',
        help='Probe compute-service URLs (uri + PATH) for readiness',
    )


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


def parse_vars(items: list[str]) -> dict[str, str]:
    """Parse repeated NAME=VALUE flags.

    Raises:
        ConfigError: If an item has no '='
    """
    variables = {}
    for item in items:
        name, sep, value = item.partition('=')
        if not sep or not name:
            raise ConfigError(f"Invalid --var '{item}', expected NAME=VALUE")
        variables[name.strip()] = value
    return variables


def _load_graph(args) -> ResourceGraph:
    """Load and validate the graph named by args.

    Raises:
        ConfigError: If no graph source is given or the file is invalid
        ValidationError: If the graph is structurally invalid
    """
    if not args.graph and not args.graph_file:
        raise ConfigError("specify a graph with -g or --graph-file")
    document = load_graph_document(
        name=args.graph,
        file_path=args.graph_file,
        variables=parse_vars(args.var),
    )
    return ResourceGraph.from_document(document)


def _load_settings(args) -> EngineSettings:
    settings = load_settings(args.config)
    if args.state_dir:
        settings.state_dir = args.state_dir
    if getattr(args, 'parallelism', None):
        if args.parallelism < 1:
            raise ConfigError(f"--parallelism must be >= 1, got {args.parallelism}")
        settings.parallelism = args.parallelism
    if getattr(args, 'no_refresh', False):
        settings.refresh = False
    return settings


def build_reconciler(graph: ResourceGraph, settings: EngineSettings, dry_run: bool = False,
                     http_probe: Optional[str] = None) -> Reconciler:
    """Wire a reconciler against the local cloud under the state directory."""
    graph_dir = Path(settings.state_dir) / graph.name
    cloud = LocalCloud(graph_dir / 'cloud.json')
    secrets = SecretLifecycleManager(FileSecretStore(graph_dir / 'secrets.yaml'))
    registry = local_registry(cloud, runtime_env=secrets.resolve_runtime_environment)
    if http_probe is not None:
        registry.register(
            ResourceKind.COMPUTE_SERVICE,
            HttpReadinessProbe(registry.get(ResourceKind.COMPUTE_SERVICE), path=http_probe),
        )
    return Reconciler(
        graph=graph,
        providers=registry,
        store=StateStore(settings.state_dir, graph.name, settings.lock_timeout),
        settings=settings,
        secrets=secrets,
        events=EventBus([log_subscriber]),
        dry_run=dry_run,
    )


@contextmanager
def _abort_on_interrupt(abort: threading.Event) -> Iterator[None]:
    """First Ctrl-C stops scheduling new waves; a second one interrupts."""
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        if abort.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received: finishing in-flight operations, no new waves")
        abort.set()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def format_plan(plan: Plan) -> str:
    """Human-readable plan rendering."""
    lines = [f"Plan for '{plan.graph_name}':"]
    for entry in plan.entries:
        if entry.action == Action.NOOP:
            continue
        symbol = _ACTION_SYMBOLS[entry.action]
        wave = f" (wave {entry.wave})" if entry.wave is not None else ''
        reason = f" - {entry.reason}" if entry.reason else ''
        lines.append(f"  {symbol:>3} {entry.action.value:<8} {entry.resource_id} [{entry.kind}]{wave}{reason}")
        for change in entry.changes:
            marker = ' (forces replacement)' if change.forces_replacement else ''
            lines.append(f"        {change.key}: {change.before!r} -> {change.after!r}{marker}")
    summary = plan.summary()
    if plan.is_noop:
        lines.append("  No changes. Infrastructure matches the graph.")
    lines.append(
        f"Summary: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['destroy']} to destroy, "
        f"{summary['noop']} unchanged"
    )
    return '\n'.join(lines)


def format_result(verb: str, result: ApplyResult) -> str:
    lines = [f"{verb.capitalize()} of '{result.graph_name}':"]
    for row in result.status_table():
        detail = row.get('error') or row.get('note') or ''
        suffix = f"  {detail}" if detail else ''
        lines.append(f"  {row['status']:<14} {row['resource_id']} [{row['kind']}]{suffix}")
    if result.outputs:
        lines.append("Outputs:")
        rendered = outputs_to_json(result.outputs)
        for name, value in rendered.items():
            lines.append(f"  {name} = {json.dumps(value)}")
    if result.cancelled:
        lines.append("Run was cancelled before all waves were scheduled.")
    lines.append("Result: " + ('success' if result.success else
                                'partial failure' if result.partial else 'failed'))
    return '\n'.join(lines)


def _emit_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2))


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    parser = _common_parser('validate', 'Validate graph structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        graph = _load_graph(args)
    except (ConfigError, ValidationError) as e:
        if args.json_output:
            _emit_json({'valid': False, 'error': str(e)})
        else:
            _print_error(str(e))
        return EXIT_INVALID

    count = len(graph)
    if args.json_output:
        _emit_json({'valid': True, 'graph': graph.name, 'resources': count,
                    'edges': len(graph.edges())})
    else:
        print(f"Graph '{graph.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return EXIT_OK


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show what apply would change')
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip reading live resources before planning',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        graph = _load_graph(args)
        reconciler = build_reconciler(graph, settings)
        plan = reconciler.plan()
    except (ConfigError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_INVALID
    except ProvisionError as e:
        _print_error(str(e))
        return EXIT_FAILED

    if args.json_output:
        _emit_json(plan.to_dict())
    else:
        print(format_plan(plan))
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Create or update infrastructure from a graph')
    _add_run_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        graph = _load_graph(args)
        reconciler = build_reconciler(graph, settings, args.dry_run, args.http_probe)
        logger.info("Applying graph '%s' (%d resources, parallelism %d)",
                    graph.name, len(graph), settings.parallelism)
        with _abort_on_interrupt(reconciler.abort):
            result = reconciler.apply()
    except (ConfigError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_INVALID
    except StateLockError as e:
        _print_error(str(e))
        return EXIT_FAILED

    if args.json_output:
        _emit_json(result.to_dict())
    elif result.dry_run:
        print(format_plan(result.plan))
    else:
        print(format_result('apply', result))
    return EXIT_OK if result.success else EXIT_FAILED


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Destroy every resource recorded for a graph')
    _add_run_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        graph = _load_graph(args)
    except (ConfigError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_INVALID

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy all resources recorded for graph '{graph.name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_FAILED

    try:
        reconciler = build_reconciler(graph, settings, args.dry_run)
        with _abort_on_interrupt(reconciler.abort):
            result = reconciler.destroy()
    except ValidationError as e:
        _print_error(str(e))
        return EXIT_INVALID
    except StateLockError as e:
        _print_error(str(e))
        return EXIT_FAILED

    if args.json_output:
        _emit_json(result.to_dict())
    elif result.dry_run:
        print(format_plan(result.plan))
    else:
        print(format_result('destroy', result))
    return EXIT_OK if result.success else EXIT_FAILED


def outputs_main(argv: list) -> int:
    """Handle 'outputs' verb."""
    parser = _common_parser('outputs', 'Show graph outputs from the last run')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        graph = _load_graph(args)
        outputs = build_reconciler(graph, settings).outputs()
    except (ConfigError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_INVALID

    rendered = outputs_to_json(outputs)
    missing = unavailable_paths(outputs)
    if args.json_output:
        _emit_json({'graph': graph.name, 'outputs': rendered, 'unavailable': missing})
    else:
        for name, value in rendered.items():
            print(f"{name} = {json.dumps(value)}")
        if missing:
            print(f"\n{len(missing)} output(s) unavailable: {', '.join(missing)}")
    return EXIT_OK if not missing else EXIT_FAILED


def rotate_main(argv: list) -> int:
    """Handle 'rotate' verb."""
    parser = _common_parser('rotate', 'Append a new version to a managed secret')
    parser.add_argument(
        '--secret', '-s',
        required=True,
        help='Resource id of the secret-version to rotate',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        graph = _load_graph(args)
        token = build_reconciler(graph, settings).rotate_secret(args.secret)
    except (ConfigError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_INVALID
    except StateLockError as e:
        _print_error(str(e))
        return EXIT_FAILED

    if args.json_output:
        _emit_json({'graph': graph.name, 'secret': args.secret, 'version': str(token)})
    else:
        print(f"Rotated {args.secret} to {token}. Run apply to roll dependents onto it.")
    return EXIT_OK
