"""
Crash-durable registry of environments, rebuilt on demand from lock files.

The state document lives at ``~/.portalloc/state.json`` and is only touched
under an ``fcntl.flock`` advisory lock on the document itself: exclusive for
record/remove/reconcile, shared for reads. Every write truncates, rewrites and
fsyncs the whole document before the lock is released.

Reconciliation discards the document and rebuilds it from the ``env-*.lock``
files in a lock directory plus the descriptor each lock's worktree points to.
Whether an environment is still active is never stored; it is computed from
the liveness of its recorded PID.
"""

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import psutil

from . import config
from .environment import read_env_file
from .exceptions import EnvironmentNotFoundError, MetadataError, StateCorruptedError, StateError
from .metadata import LockMetadata

logger = logging.getLogger('portalloc')


class EnvironmentStatus(Enum):
    ACTIVE = 'active'
    STALE = 'stale'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class PortsState:
    base_port: int = 0
    count: int = 0
    allocated: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'base_port': self.base_port, 'count': self.count, 'allocated': list(self.allocated)}

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'PortsState':
        data = data or {}
        return cls(
            base_port=int(data.get('base_port', 0)),
            count=int(data.get('count', 0)),
            allocated=[int(p) for p in data.get('allocated') or []],
        )


@dataclass
class EnvironmentState:
    """Persisted view of one environment."""

    id: str
    pid: int
    created_at: datetime
    worktree_path: str
    temp_dir: str
    lock_file: str
    env_file: str
    ports: PortsState = field(default_factory=PortsState)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'pid': self.pid,
            'created_at': self.created_at.isoformat(),
            'worktree_path': self.worktree_path,
            'temp_dir': self.temp_dir,
            'lock_file': self.lock_file,
            'env_file': self.env_file,
            'ports': self.ports.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EnvironmentState':
        return cls(
            id=data['id'],
            pid=int(data.get('pid', 0)),
            created_at=_parse_datetime(data.get('created_at')) or datetime.fromtimestamp(0, timezone.utc),
            worktree_path=data.get('worktree_path', ''),
            temp_dir=data.get('temp_dir', ''),
            lock_file=data.get('lock_file', ''),
            env_file=data.get('env_file', ''),
            ports=PortsState.from_dict(data.get('ports')),
        )


@dataclass
class StateDocument:
    version: str = config.STATE_VERSION
    environments: List[EnvironmentState] = field(default_factory=list)
    last_reconciled_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'version': self.version,
            'environments': [env.to_dict() for env in self.environments],
            'last_reconciled_at': self.last_reconciled_at.isoformat() if self.last_reconciled_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'StateDocument':
        return cls(
            version=data.get('version', config.STATE_VERSION),
            environments=[EnvironmentState.from_dict(e) for e in data.get('environments') or []],
            last_reconciled_at=_parse_datetime(data.get('last_reconciled_at')),
        )


def is_process_running(pid: int) -> bool:
    """Check if a process is actually running (not zombie/dead)."""
    if pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() not in (psutil.STATUS_DEAD, psutil.STATUS_ZOMBIE)
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return True
    except psutil.Error:
        return False


def get_environment_status(env: EnvironmentState,
                           is_alive: Callable[[int], bool] = is_process_running) -> EnvironmentStatus:
    if env.pid > 0 and is_alive(env.pid):
        return EnvironmentStatus.ACTIVE
    return EnvironmentStatus.STALE


def parse_env_file(env_file: Path) -> PortsState:
    """Port information from a descriptor file; empty if absent or unusable."""
    port_range = read_env_file(env_file)
    if port_range is None:
        return PortsState()
    return PortsState(port_range.base_port, port_range.count, port_range.ports())


def _lock_created_at(lock_file) -> datetime:
    """Creation time recorded in a lock file, or now if it cannot be read."""
    try:
        metadata = LockMetadata.parse(Path(lock_file).read_text())
        if metadata.timestamp > 0:
            return datetime.fromtimestamp(metadata.timestamp, timezone.utc)
    except (OSError, UnicodeDecodeError, MetadataError, OverflowError, ValueError) as e:
        logger.debug(f"No usable timestamp in {lock_file}: {e}")
    return _utcnow()


def parse_lock_file(lock_file: Path, temp_root: Optional[Path] = None) -> EnvironmentState:
    """
    Rebuild an EnvironmentState from a lock file and its worktree's descriptor.

    Args:
        lock_file: Path to an ``env-<id>.lock`` file
        temp_root: Directory holding per-environment temp dirs

    Raises:
        MetadataError: If the name does not match, the body is unreadable
            or carries no owner metadata, or the timestamp is out of range
    """
    lock_file = Path(lock_file)
    name = lock_file.name
    if (not name.startswith(config.LOCK_PREFIX) or not name.endswith(config.LOCK_SUFFIX)
            or len(name) <= len(config.LOCK_PREFIX) + len(config.LOCK_SUFFIX)):
        raise MetadataError(f"Invalid lock file name: {name}")
    isolation_id = name[len(config.LOCK_PREFIX):-len(config.LOCK_SUFFIX)]

    try:
        metadata = LockMetadata.parse(lock_file.read_text())
    except (OSError, UnicodeDecodeError) as e:
        raise MetadataError(f"Failed to read lock file {lock_file}: {e}")

    try:
        created_at = datetime.fromtimestamp(metadata.timestamp, timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise MetadataError(f"Invalid timestamp in lock file {lock_file}: {e}")

    temp_root = Path(temp_root) if temp_root else config.default_temp_root()
    env_file = Path(metadata.worktree) / config.ENV_FILE_NAME if metadata.worktree else None

    return EnvironmentState(
        id=isolation_id,
        pid=metadata.pid,
        created_at=created_at,
        worktree_path=metadata.worktree,
        temp_dir=str(temp_root / f"{config.TEMP_DIR_PREFIX}{isolation_id}"),
        lock_file=str(lock_file),
        env_file=str(env_file) if env_file else '',
        ports=parse_env_file(env_file) if env_file else PortsState(),
    )


class StateManager:
    """Reads and writes the state document under an advisory file lock."""

    def __init__(self, state_path: Optional[Path] = None,
                 is_alive: Callable[[int], bool] = is_process_running,
                 temp_root: Optional[Path] = None):
        """
        Initialize the state manager.

        Args:
            state_path: Path to the JSON document (default ~/.portalloc/state.json)
            is_alive: Liveness probe used to classify environments
            temp_root: Directory holding per-environment temp dirs, for reconcile
        """
        if state_path is None:
            state_path = config.default_state_dir() / config.STATE_FILE_NAME
        self.state_path = Path(state_path)
        self.state_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.is_alive = is_alive
        self.temp_root = temp_root
        # flock is per open file description, so threads need their own guard
        self._mutex = threading.Lock()

    @contextmanager
    def _locked(self, exclusive: bool = True) -> Iterator:
        with self._mutex:
            fd = os.open(self.state_path, os.O_RDWR | os.O_CREAT, 0o644)
            with os.fdopen(fd, 'r+', encoding='utf-8') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                try:
                    yield f
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _read(self, f) -> StateDocument:
        f.seek(0)
        raw = f.read()
        if not raw.strip():
            return StateDocument()
        try:
            return StateDocument.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StateCorruptedError(f"Failed to decode state file: {e}",
                                      context={'path': self.state_path})

    def _write(self, f, document: StateDocument) -> None:
        try:
            f.seek(0)
            f.truncate()
            json.dump(document.to_dict(), f, indent=2)
            f.write('\n')
            f.flush()
            os.fsync(f.fileno())
        except OSError as e:
            raise StateError(f"Failed to write state file: {e}", context={'path': self.state_path})

    def read_document(self) -> StateDocument:
        if not self.state_path.exists():
            return StateDocument()
        with self._locked(exclusive=False) as f:
            return self._read(f)

    def record_environment(self, env, pid: Optional[int] = None) -> EnvironmentState:
        """
        Insert or replace the entry for an environment.

        Args:
            env: Environment handle
            pid: Owning process, defaults to the current one

        Returns:
            The stored EnvironmentState
        """
        env_state = EnvironmentState(
            id=env.id,
            pid=os.getpid() if pid is None else pid,
            created_at=_lock_created_at(env.lock_file),
            worktree_path=str(env.worktree_path),
            temp_dir=str(env.temp_dir),
            lock_file=str(env.lock_file),
            env_file=str(env.env_file) if env.env_file else '',
            ports=PortsState(env.ports.base_port, env.ports.count, env.ports.ports()),
        )

        with self._locked() as f:
            document = self._read(f)
            for i, existing in enumerate(document.environments):
                if existing.id == env.id:
                    document.environments[i] = env_state
                    break
            else:
                document.environments.append(env_state)
            self._write(f, document)

        return env_state

    def remove_environment(self, isolation_id: str) -> None:
        with self._locked() as f:
            document = self._read(f)
            document.environments = [e for e in document.environments if e.id != isolation_id]
            self._write(f, document)

    def list_environments(self) -> List[EnvironmentState]:
        return self.read_document().environments

    def get_environment(self, isolation_id: str) -> EnvironmentState:
        for env in self.list_environments():
            if env.id == isolation_id:
                return env
        raise EnvironmentNotFoundError(f"Environment {isolation_id} not found")

    def reconcile(self, lock_dir: Path) -> int:
        """
        Replace the state document with what the lock directory shows.

        Lock files that cannot be parsed are skipped.

        Returns:
            Number of environments in the rebuilt document
        """
        lock_dir = Path(lock_dir)
        environments = []
        for lock_file in sorted(lock_dir.glob(f"{config.LOCK_PREFIX}*{config.LOCK_SUFFIX}")):
            try:
                environments.append(parse_lock_file(lock_file, self.temp_root))
            except MetadataError as e:
                logger.debug(f"Skipping lock file {lock_file}: {e}")

        document = StateDocument(environments=environments, last_reconciled_at=_utcnow())
        with self._locked() as f:
            self._write(f, document)

        logger.info(f"Reconciled {len(environments)} environment(s) from {lock_dir}")
        return len(environments)

    def get_environment_status(self, env: EnvironmentState) -> EnvironmentStatus:
        return get_environment_status(env, self.is_alive)

    def stale_environments(self, older_than: Optional[timedelta] = None) -> List[EnvironmentState]:
        """
        Environments eligible for cleanup.

        Without older_than, those whose owning process is gone. With it, those
        created longer ago than older_than regardless of process status.
        """
        now = _utcnow()
        result = []
        for env in self.list_environments():
            if older_than is not None:
                if now - env.created_at > older_than:
                    result.append(env)
            elif self.get_environment_status(env) is EnvironmentStatus.STALE:
                result.append(env)
        return result
