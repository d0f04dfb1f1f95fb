"""
Isolated environment management for parallel test execution.

This module provides Environment and EnvironmentManager classes that bundle:
- A collision-resistant isolation ID guarded by an atomic lock file
- A run of consecutive ports verified bindable at allocation time
- A private temp directory derived from the ID
- A ``.env.isolation`` descriptor file for downstream tools
"""

import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from . import config
from .exceptions import (
    CleanupError,
    EnvFileMissingError,
    LockMissingError,
    PortExhaustionError,
    TempDirMissingError,
)
from .isolation import IDGenerator
from .metadata import FORMAT_VERSION, format_records, parse_int, parse_records
from .ports import PortAllocator, PortRange

logger = logging.getLogger('portalloc')


def read_env_file(env_file: Path) -> Optional[PortRange]:
    """
    Read the port range recorded in a descriptor file.

    Returns:
        PortRange, or None if the file is missing or has no usable port fields
    """
    try:
        records = parse_records(Path(env_file).read_text())
    except (OSError, UnicodeDecodeError):
        return None
    base_port = parse_int(records.get('PORT_BASE'))
    count = parse_int(records.get('PORT_COUNT'))
    if base_port <= 0 or count <= 0:
        return None
    return PortRange(base_port, count)


@dataclass
class Environment:
    """One provisioned isolation environment."""

    id: str
    worktree_path: str
    temp_dir: Path
    ports: PortRange
    lock_file: Path
    env_file: Optional[Path] = None
    _manager: Optional['EnvironmentManager'] = field(default=None, repr=False, compare=False)

    @property
    def compose_project_name(self) -> str:
        return f"portalloc-{self.id}"

    def named_ports(self) -> List[Tuple[str, int]]:
        """Return (name, port) pairs for the first few allocated slots."""
        return [
            (name, self.ports.get_port(i))
            for i, name in enumerate(config.NAMED_PORTS[:self.ports.count])
        ]

    def descriptor_records(self) -> List[Tuple[str, object]]:
        records: List[Tuple[str, object]] = [
            ('ISOLATION_ID', self.id),
            ('TEMP_DIR', self.temp_dir),
            ('PORT_BASE', self.ports.base_port),
            ('PORT_COUNT', self.ports.count),
        ]
        records.extend(self.named_ports())
        return records

    def get_environment_variables(self) -> Dict[str, str]:
        """
        Get environment variables describing this environment.

        Returns:
            Dictionary of environment variables for child processes
        """
        env_vars = {key: str(value) for key, value in self.descriptor_records()}
        env_vars['COMPOSE_PROJECT_NAME'] = self.compose_project_name
        env_vars['PORTALLOC_ISOLATED'] = '1'
        return env_vars

    def as_subprocess_env(self) -> Dict[str, str]:
        """Full environment dict for subprocess execution, including system vars."""
        env = os.environ.copy()
        env.update(self.get_environment_variables())
        return env

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._manager is not None:
            self._manager.cleanup(self)
        return False


class EnvironmentManager:
    """Creates, validates and cleans up isolated environments."""

    def __init__(self, id_generator: Optional[IDGenerator] = None,
                 port_allocator: Optional[PortAllocator] = None):
        """
        Initialize the environment manager.

        Args:
            id_generator: Source of isolation IDs and locks
            port_allocator: Port allocator; defaults to the standard window
        """
        self.id_generator = id_generator or IDGenerator()
        self.port_allocator = port_allocator or PortAllocator()
        self.active_environments: Dict[str, Environment] = {}
        # Ports handed to live environments of this process
        self._claimed_ports: Set[int] = set()
        self._lock = threading.Lock()

    def create_environment(self, ports_needed: int) -> Environment:
        """
        Create a new isolated environment.

        Any failure rolls back whatever was already created before the
        error propagates.

        Args:
            ports_needed: Number of consecutive ports to allocate

        Returns:
            Newly created Environment
        """
        isolation_id, lock_file = self.id_generator.acquire()
        env = Environment(
            id=isolation_id,
            worktree_path=self.id_generator.worktree_path,
            temp_dir=self.id_generator.temp_dir_for(isolation_id),
            ports=PortRange(0, 0),
            lock_file=lock_file,
            _manager=self,
        )

        try:
            env.ports = self._allocate_ports(ports_needed)
            env.temp_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
            env.env_file = self._write_env_file(env)
        except Exception as e:
            logger.warning(f"Failed to create environment {isolation_id}, rolling back: {e}")
            self._rollback(env)
            raise

        with self._lock:
            self.active_environments[env.id] = env

        logger.info(f"Created environment {env.id}: ports "
                    f"{env.ports.base_port}-{env.ports.base_port + env.ports.count - 1}, "
                    f"temp dir {env.temp_dir}")
        return env

    def _allocate_ports(self, ports_needed: int) -> PortRange:
        # Only the claim is serialized; two threads of this process never
        # receive overlapping runs. Other processes are only excluded by the
        # bind check.
        for _ in range(self.port_allocator.config.max_retries):
            port_range = self.port_allocator.allocate_port_range(ports_needed)
            with self._lock:
                if self._claimed_ports.isdisjoint(port_range.ports()):
                    self._claimed_ports.update(port_range.ports())
                    return port_range
            logger.debug(f"Ports at {port_range.base_port} already claimed in-process, retrying")
        raise PortExhaustionError(
            f"Unable to allocate {ports_needed} ports disjoint from live environments"
        )

    def _write_env_file(self, env: Environment) -> Path:
        env_file = Path(env.worktree_path) / config.ENV_FILE_NAME
        content = format_records(
            env.descriptor_records(),
            header=f"portalloc descriptor v{FORMAT_VERSION} for {env.id}",
        )
        tmp_file = env_file.with_name(f"{env_file.name}.{env.id}.tmp")
        tmp_file.write_text(content)
        os.replace(tmp_file, env_file)
        return env_file

    def _rollback(self, env: Environment) -> None:
        try:
            self.cleanup(env)
        except CleanupError as e:
            logger.error(f"Rollback incomplete for {env.id}: {e}")

    def cleanup(self, env: Environment) -> None:
        """
        Remove temp dir, descriptor file and lock, in that order.

        Every step is attempted even if an earlier one failed, and resources
        that are already gone count as cleaned.

        Raises:
            CleanupError: Aggregating every real error encountered
        """
        errors = []

        try:
            shutil.rmtree(env.temp_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            errors.append(f"failed to remove temp dir: {e}")

        if env.env_file:
            try:
                Path(env.env_file).unlink(missing_ok=True)
            except OSError as e:
                errors.append(f"failed to remove env file: {e}")

        try:
            if env.lock_file:
                Path(env.lock_file).unlink(missing_ok=True)
            else:
                self.id_generator.release_lock(env.id)
        except OSError as e:
            errors.append(f"failed to release lock: {e}")

        with self._lock:
            self.active_environments.pop(env.id, None)
            self._claimed_ports.difference_update(env.ports.ports())

        if errors:
            logger.warning(f"Cleanup errors for {env.id}: {errors}")
            raise CleanupError(env.id, errors)

        logger.info(f"Cleaned up environment {env.id}")

    def validate(self, env: Environment) -> None:
        """
        Check that the lock, temp directory and descriptor all exist.

        Ports are not checked; an in-use environment is expected to have its
        own services listening on them.

        Raises:
            LockMissingError, TempDirMissingError, EnvFileMissingError
        """
        lock_file = Path(env.lock_file) if env.lock_file else self.id_generator.lock_path(env.id)
        if not lock_file.exists():
            raise LockMissingError(f"Lock file missing for {env.id}", context={'lock_file': lock_file})

        if not Path(env.temp_dir).exists():
            raise TempDirMissingError(f"Temp directory missing: {env.temp_dir}")

        if not env.env_file or not Path(env.env_file).exists():
            raise EnvFileMissingError(f"Env file missing: {env.env_file}")

    def environment_for_id(self, isolation_id: str, worktree_path: Optional[str] = None) -> Environment:
        """
        Rebuild an environment handle from its ID alone.

        The port range is read back from the descriptor when it still exists.
        """
        worktree = worktree_path or self.id_generator.worktree_path
        env_file = Path(worktree) / config.ENV_FILE_NAME
        return Environment(
            id=isolation_id,
            worktree_path=worktree,
            temp_dir=self.id_generator.temp_dir_for(isolation_id),
            ports=read_env_file(env_file) or PortRange(0, 0),
            lock_file=self.id_generator.lock_path(isolation_id),
            env_file=env_file,
            _manager=self,
        )

    def environment_from_state(self, env_state) -> Environment:
        """Rebuild an environment handle from a persisted EnvironmentState."""
        ports = env_state.ports
        return Environment(
            id=env_state.id,
            worktree_path=env_state.worktree_path,
            temp_dir=Path(env_state.temp_dir),
            ports=PortRange(ports.base_port, ports.count) if ports else PortRange(0, 0),
            lock_file=Path(env_state.lock_file),
            env_file=Path(env_state.env_file) if env_state.env_file else None,
            _manager=self,
        )

    def get_environment(self, isolation_id: str) -> Optional[Environment]:
        return self.active_environments.get(isolation_id)

    def release_environment(self, isolation_id: str) -> None:
        """Cleanup an environment created by this manager, if still tracked."""
        env = self.active_environments.get(isolation_id)
        if env is not None:
            self.cleanup(env)

    def cleanup_all(self) -> None:
        """Cleanup all environments created by this manager."""
        for isolation_id in list(self.active_environments.keys()):
            try:
                self.release_environment(isolation_id)
            except CleanupError as e:
                logger.warning(f"{e}")
