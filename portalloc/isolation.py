"""Unique isolation ID generation and atomic on-disk locks."""
import hashlib
import logging
import os
import secrets
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from . import config
from .exceptions import IdentifierExhaustionError, LockExistsError
from .metadata import LockMetadata

logger = logging.getLogger('portalloc')


def _default_instance_id() -> str:
    return str(time.time_ns() % 10_000_000_000)


@dataclass
class IsolationConfig:
    """Inputs for ID generation and where locks and temp dirs live."""

    worktree_path: str = ''
    instance_id: str = field(default_factory=_default_instance_id)
    lock_dir: Path = field(default_factory=config.default_lock_dir)
    temp_root: Path = field(default_factory=config.default_temp_root)
    max_retries: int = config.DEFAULT_ID_RETRIES
    collision_backoff: float = config.DEFAULT_COLLISION_BACKOFF


class IDGenerator:
    """Generates collision-resistant isolation IDs and owns their lock files.

    The lock file is the sole arbiter of whether an ID is in use. It is
    created with O_CREAT|O_EXCL, so when two callers race on the same ID
    exactly one of them gets the lock.
    """

    def __init__(self, isolation_config: Optional[IsolationConfig] = None):
        self.config = isolation_config or IsolationConfig()
        if not self.config.worktree_path:
            try:
                self.config.worktree_path = os.getcwd()
            except OSError:
                self.config.worktree_path = '.'
        self.config.lock_dir = Path(self.config.lock_dir)
        self.config.temp_root = Path(self.config.temp_root)
        self.config.lock_dir.mkdir(mode=0o750, parents=True, exist_ok=True)

    @property
    def worktree_path(self) -> str:
        return self.config.worktree_path

    def lock_path(self, isolation_id: str) -> Path:
        return self.config.lock_dir / f"{config.LOCK_PREFIX}{isolation_id}{config.LOCK_SUFFIX}"

    def temp_dir_for(self, isolation_id: str) -> Path:
        return self.config.temp_root / f"{config.TEMP_DIR_PREFIX}{isolation_id}"

    def _base_id(self) -> str:
        try:
            hostname = socket.gethostname()
        except OSError:
            hostname = 'unknown'

        base_input = '-'.join([
            self.config.worktree_path,
            self.config.instance_id,
            str(time.time_ns()),
            str(secrets.randbits(63)),
            hostname,
            str(os.getpid()),
        ])
        # 6 bytes -> 12 hex characters
        return hashlib.sha256(base_input.encode('utf-8')).hexdigest()[:12]

    def generate(self) -> str:
        """
        Generate an isolation ID with no existing lock file or temp dir.

        Returns:
            The isolation ID

        Raises:
            IdentifierExhaustionError: If every candidate collided
        """
        base_id = self._base_id()

        for counter in range(self.config.max_retries):
            isolation_id = base_id
            if counter > 0:
                isolation_id = f"{base_id}{secrets.randbelow(10000):04d}{counter:03d}"

            if not self.lock_path(isolation_id).exists() and not self.temp_dir_for(isolation_id).exists():
                return isolation_id

            logger.debug(f"Isolation ID {isolation_id} collides (attempt {counter + 1}), retrying")
            time.sleep(self.config.collision_backoff)

        raise IdentifierExhaustionError(
            f"Unable to generate unique isolation ID after {self.config.max_retries} attempts",
            context={'lock_dir': self.config.lock_dir}
        )

    def create_lock(self, isolation_id: str) -> Path:
        """
        Atomically create the lock file for an ID and write owner metadata.

        Returns:
            Path to the lock file

        Raises:
            LockExistsError: If another caller already holds this ID
        """
        lock_file = self.lock_path(isolation_id)
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            raise LockExistsError(isolation_id, lock_file)

        try:
            with os.fdopen(fd, 'w') as f:
                f.write(LockMetadata.current(self.config.worktree_path).render())
        except OSError:
            lock_file.unlink(missing_ok=True)
            raise

        return lock_file

    def acquire(self) -> Tuple[str, Path]:
        """
        Generate an ID and lock it, regenerating if another caller wins the race.

        Returns:
            Tuple of (isolation_id, lock_file)
        """
        for attempt in range(self.config.max_retries):
            isolation_id = self.generate()
            try:
                return isolation_id, self.create_lock(isolation_id)
            except LockExistsError as e:
                logger.warning(f"{e}, regenerating (attempt {attempt + 1})")
                time.sleep(self.config.collision_backoff)

        raise IdentifierExhaustionError(
            f"Unable to lock a unique isolation ID after {self.config.max_retries} attempts",
            context={'lock_dir': self.config.lock_dir}
        )

    def release_lock(self, isolation_id: str) -> None:
        """Remove the lock file. A missing lock is not an error."""
        self.lock_path(isolation_id).unlink(missing_ok=True)

    def is_locked(self, isolation_id: str) -> bool:
        return self.lock_path(isolation_id).exists()
