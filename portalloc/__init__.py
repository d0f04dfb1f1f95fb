"""
portalloc - Collision-free ports and workspaces for parallel test runs

Allocates a run of consecutive free TCP ports, a unique isolation ID guarded
by an atomic lock file, and a private temp directory, so that many test or
service instances can share one host without clashing.

Usage:
    python -m portalloc create --ports 5      # Allocate an environment
    python -m portalloc validate --id <id>    # Check it is still intact
    python -m portalloc cleanup --id <id>     # Release everything
    python -m portalloc list --reconcile      # Show active/stale environments
"""

from .environment import Environment, EnvironmentManager
from .isolation import IDGenerator, IsolationConfig
from .ports import AllocatorConfig, PortAllocator, PortRange
from .state import EnvironmentState, EnvironmentStatus, StateManager, get_environment_status

__version__ = "1.0.0"

__all__ = [
    'AllocatorConfig',
    'Environment',
    'EnvironmentManager',
    'EnvironmentState',
    'EnvironmentStatus',
    'IDGenerator',
    'IsolationConfig',
    'PortAllocator',
    'PortRange',
    'StateManager',
    'get_environment_status',
]
