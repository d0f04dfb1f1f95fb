"""
Line-oriented KEY=VALUE records shared by lock files and descriptor files.

Grammar (one record per line):

    line    := comment | blank | record
    comment := '#' <any text>
    record  := KEY '=' VALUE        (split on the first '=')

Comments, blank lines and lines without '=' are skipped, and a repeated key
keeps its last value. Writers emit a ``# portalloc <kind> v<N>`` header;
readers never require it.
"""

import os
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from .exceptions import MetadataError

FORMAT_VERSION = 1
LOCK_KEYS = ('PID', 'Timestamp', 'Worktree')


def parse_records(text: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines, skipping anything malformed."""
    records: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if key:
            records[key] = value.strip()
    return records


def format_records(items: Iterable[Tuple[str, object]], header: Optional[str] = None) -> str:
    lines = []
    if header:
        lines.append(f"# {header}")
    lines.extend(f"{key}={value}" for key, value in items)
    return '\n'.join(lines) + '\n'


def parse_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


@dataclass
class LockMetadata:
    """Owner metadata stored inside a lock file."""

    pid: int
    timestamp: int
    worktree: str

    @classmethod
    def current(cls, worktree: str) -> 'LockMetadata':
        return cls(pid=os.getpid(), timestamp=int(time.time()), worktree=worktree)

    @classmethod
    def parse(cls, text: str) -> 'LockMetadata':
        records = parse_records(text)
        if not any(key in records for key in LOCK_KEYS):
            raise MetadataError("Lock file has no owner metadata")
        return cls(
            pid=parse_int(records.get('PID')),
            timestamp=parse_int(records.get('Timestamp')),
            worktree=records.get('Worktree', ''),
        )

    def render(self) -> str:
        return format_records(
            [('PID', self.pid), ('Timestamp', self.timestamp), ('Worktree', self.worktree)],
            header=f"portalloc lock v{FORMAT_VERSION}",
        )
