"""CLI entry point for portalloc."""
import json
import os
import re
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from . import __version__, config
from .environment import Environment, EnvironmentManager
from .exceptions import CleanupError, PortallocError
from .isolation import IDGenerator, IsolationConfig
from .logging_setup import setup_logging
from .state import StateManager, get_environment_status


def _option(args: List[str], name: str, default: Optional[str] = None) -> Optional[str]:
    """Value following ``name`` in args, or default."""
    if name in args:
        idx = args.index(name)
        if idx + 1 < len(args):
            return args[idx + 1]
    return default


def _parse_duration(text: str) -> timedelta:
    """Parse durations like '2h', '30m', '1h30m', '45s'."""
    parts = re.findall(r'(\d+)([hms])', text)
    if not parts or ''.join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {text}")
    units = {'h': 'hours', 'm': 'minutes', 's': 'seconds'}
    total = timedelta()
    for amount, unit in parts:
        total += timedelta(**{units[unit]: int(amount)})
    return total


def _manager(args: List[str], instance_id: str = '') -> EnvironmentManager:
    isolation_config = IsolationConfig(
        worktree_path=_option(args, '--worktree', '') or os.getcwd(),
        lock_dir=Path(_option(args, '--lock-dir', str(config.default_lock_dir()))),
    )
    if instance_id:
        isolation_config.instance_id = instance_id
    return EnvironmentManager(IDGenerator(isolation_config))


def print_environment(env: Environment, fmt: str = 'human'):
    if fmt == 'json':
        print(json.dumps({
            'isolation_id': env.id,
            'compose_project_name': env.compose_project_name,
            'worktree_path': env.worktree_path,
            'temp_dir': str(env.temp_dir),
            'lock_file': str(env.lock_file),
            'env_file': str(env.env_file),
            'ports': {
                'base_port': env.ports.base_port,
                'count': env.ports.count,
                'ports': env.ports.ports(),
            },
        }, indent=2))
    elif fmt == 'shell':
        for key, value in env.get_environment_variables().items():
            if key != 'PORTALLOC_ISOLATED':
                print(f"export {key}={value}")
    else:
        print("✅ Environment created successfully!\n")
        print(f"  Isolation ID:    {env.id}")
        print(f"  Temp Directory:  {env.temp_dir}")
        print(f"  Lock File:       {env.lock_file}")
        print(f"  Env File:        {env.env_file}\n")
        print(f"  Base Port:       {env.ports.base_port}")
        print(f"  Port Count:      {env.ports.count}")
        print(f"  Allocated Ports: {env.ports.ports()}\n")
        print("To use this environment:")
        print(f"  source {env.env_file}\n")
        print("To cleanup:")
        print(f"  python -m portalloc cleanup --id {env.id}")


def create(args: List[str]) -> int:
    try:
        count = int(_option(args, '--ports', '5'))
    except ValueError:
        print("Error: --ports must be a number")
        return 1

    manager = _manager(args, _option(args, '--instance-id', ''))
    env = manager.create_environment(count)

    try:
        StateManager().record_environment(env)
    except PortallocError as e:
        print(f"⚠️  Could not record environment in state file: {e}", file=sys.stderr)

    fmt = 'json' if '--json' in args else 'shell' if '--shell' in args else 'human'
    print_environment(env, fmt)
    return 0


def validate(args: List[str]) -> int:
    isolation_id = _option(args, '--id')
    if not isolation_id:
        print("Usage: python -m portalloc validate --id <isolation_id> [--worktree PATH]")
        return 1

    manager = _manager(args)
    env = manager.environment_for_id(isolation_id)
    manager.validate(env)

    print("✅ Environment validation successful!\n")
    print(f"  Isolation ID:   {env.id}")
    print(f"  Lock File:      {env.lock_file} ✓")
    print(f"  Temp Directory: {env.temp_dir} ✓")
    print(f"  Env File:       {env.env_file} ✓")
    return 0


def cleanup(args: List[str]) -> int:
    isolation_id = _option(args, '--id')
    cleanup_all = '--all' in args
    cleanup_stale = '--stale' in args
    if sum([bool(isolation_id), cleanup_all, cleanup_stale]) != 1:
        print("Error: exactly one of --id, --all, or --stale must be specified")
        return 1

    manager = _manager(args)
    state_mgr = StateManager()

    if isolation_id:
        manager.cleanup(manager.environment_for_id(isolation_id))
        state_mgr.remove_environment(isolation_id)
        print(f"✅ Environment {isolation_id} cleaned up successfully")
        return 0

    lock_dir = manager.id_generator.config.lock_dir
    state_mgr.reconcile(lock_dir)

    older_than = None
    if cleanup_stale and _option(args, '--older-than'):
        try:
            older_than = _parse_duration(_option(args, '--older-than'))
        except ValueError as e:
            print(f"Error: --older-than: {e}")
            return 1

    targets = state_mgr.list_environments() if cleanup_all else state_mgr.stale_environments(older_than)
    if not targets:
        print("No environments to cleanup")
        return 0

    cleaned = failed = 0
    for env_state in targets:
        try:
            manager.cleanup(manager.environment_from_state(env_state))
        except CleanupError as e:
            print(f"⚠️  Failed to cleanup {env_state.id}: {e}")
            failed += 1
            continue
        state_mgr.remove_environment(env_state.id)
        print(f"✅ Cleaned: {env_state.id}")
        cleaned += 1

    summary = f"\n✅ Cleaned up {cleaned} environment(s)"
    if failed:
        summary += f" ({failed} failed)"
    print(summary)
    return 0


def list_environments(args: List[str]) -> int:
    state_mgr = StateManager()
    if '--reconcile' in args:
        state_mgr.reconcile(Path(_option(args, '--lock-dir', str(config.default_lock_dir()))))

    envs = state_mgr.list_environments()
    fmt = _option(args, '--format', 'table')

    if fmt == 'json':
        output = []
        for env in envs:
            data = env.to_dict()
            data['status'] = get_environment_status(env, state_mgr.is_alive).value
            output.append(data)
        print(json.dumps(output, indent=2))
        return 0

    if fmt != 'table':
        print(f"Error: unknown format: {fmt}")
        return 1

    if not envs:
        print("No environments found")
        return 0

    print(f"{'ID':<15} {'STATUS':<8} {'PORTS':<15} {'CREATED':<20} {'PID':<8} WORKTREE")
    print('-' * 100)
    for env in envs:
        status = state_mgr.get_environment_status(env).value
        if env.ports.count:
            ports = f"{env.ports.base_port}-{env.ports.base_port + env.ports.count - 1}"
        else:
            ports = '-'
        created = env.created_at.strftime('%Y-%m-%d %H:%M:%S')
        print(f"{env.id:<15} {status:<8} {ports:<15} {created:<20} {env.pid:<8} {env.worktree_path}")
    return 0


def reconcile(args: List[str]) -> int:
    lock_dir = Path(_option(args, '--lock-dir', str(config.default_lock_dir())))
    state_mgr = StateManager()
    print("🔄 Reconciling state...")
    count = state_mgr.reconcile(lock_dir)
    print(f"✅ Found {count} environment(s)")
    print(f"✅ State file updated: {state_mgr.state_path}")
    return 0


def print_help():
    print("""
portalloc - Collision-free ports and workspaces for parallel tests

Commands:
    create [--ports N] [--instance-id ID] [--worktree PATH] [--json|--shell]
    validate --id ID [--worktree PATH]
    cleanup (--id ID | --all | --stale [--older-than 2h]) [--worktree PATH]
    list [--format table|json] [--reconcile] [--lock-dir PATH]
    reconcile [--lock-dir PATH]
    version

Global options:
    --verbose      Log debug output to stderr

Examples:
    python -m portalloc create --ports 5
    eval "$(python -m portalloc create --ports 5 --shell)"
    python -m portalloc cleanup --stale --older-than 2h
""")


COMMANDS = {
    'create': create,
    'validate': validate,
    'cleanup': cleanup,
    'list': list_environments,
    'reconcile': reconcile,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print_help()
        return 0

    setup_logging(verbose='--verbose' in args)
    command = args[0].lower()

    if command == 'version':
        print(f"portalloc version {__version__}")
        return 0
    if command in ('help', '-h', '--help'):
        print_help()
        return 0
    if command not in COMMANDS:
        print(f"Unknown command: {command}")
        print_help()
        return 1

    try:
        return COMMANDS[command](args[1:])
    except (PortallocError, OSError) as e:
        print(f"❌ {command} failed: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
