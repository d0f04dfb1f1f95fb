"""
Pytest configuration and fixtures for isolated testing.
"""
import pytest

from portalloc.environment import EnvironmentManager
from portalloc.isolation import IDGenerator, IsolationConfig
from portalloc.ports import AllocatorConfig, PortAllocator
from portalloc.state import StateManager


@pytest.fixture
def lock_dir(tmp_path):
    """Private lock directory per test."""
    return tmp_path / 'locks'


@pytest.fixture
def temp_root(tmp_path):
    path = tmp_path / 'tmp'
    path.mkdir()
    return path


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / 'worktree'
    path.mkdir()
    return path


@pytest.fixture
def id_generator(lock_dir, temp_root, worktree):
    """ID generator confined to the test's tmp_path."""
    return IDGenerator(IsolationConfig(
        worktree_path=str(worktree),
        instance_id='test',
        lock_dir=lock_dir,
        temp_root=temp_root,
    ))


@pytest.fixture
def port_allocator():
    """Allocator with a short retry delay so exhaustion tests stay fast."""
    return PortAllocator(AllocatorConfig(start_port=20000, end_port=30000,
                                         max_retries=20, retry_delay=0.01))


@pytest.fixture
def manager(id_generator, port_allocator):
    mgr = EnvironmentManager(id_generator, port_allocator)
    yield mgr
    mgr.cleanup_all()


@pytest.fixture
def state_manager(tmp_path, temp_root):
    return StateManager(tmp_path / 'state' / 'state.json', temp_root=temp_root)
