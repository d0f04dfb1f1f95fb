"""Tests for port range allocation."""
import socket

import pytest

from portalloc.exceptions import (
    InvalidInputError,
    PortExhaustionError,
    PortsUnavailableError,
)
from portalloc.ports import AllocatorConfig, PortAllocator, PortRange, is_port_available


@pytest.fixture
def listening_socket():
    """A socket holding an ephemeral port open for the duration of a test."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    yield s
    s.close()


def test_allocated_range_is_bindable(port_allocator):
    base = port_allocator.allocate_range(5)

    assert 20000 <= base
    assert base + 5 <= 30000
    for port in range(base, base + 5):
        assert is_port_available(port)


def test_allocate_port_range_returns_range(port_allocator):
    port_range = port_allocator.allocate_port_range(3)

    assert port_range.count == 3
    assert len(port_range) == 3
    assert port_range.ports() == [port_range.base_port + i for i in range(3)]


@pytest.mark.parametrize('count', [0, -1])
def test_non_positive_count_rejected(port_allocator, count):
    with pytest.raises(InvalidInputError):
        port_allocator.allocate_range(count)


def test_window_too_small_rejected():
    allocator = PortAllocator(AllocatorConfig(start_port=20000, end_port=20005,
                                              max_retries=1, retry_delay=0))
    with pytest.raises(InvalidInputError):
        allocator.allocate_range(5)


def test_exhaustion_when_window_is_busy(listening_socket):
    busy = listening_socket.getsockname()[1]
    # Only one candidate base, and its run covers the busy port
    allocator = PortAllocator(AllocatorConfig(start_port=busy - 1, end_port=busy + 2,
                                              max_retries=3, retry_delay=0))
    with pytest.raises(PortExhaustionError):
        allocator.allocate_range(2)


def test_allocate_specific_reports_busy_ports(port_allocator, listening_socket):
    busy = listening_socket.getsockname()[1]

    with pytest.raises(PortsUnavailableError) as exc_info:
        port_allocator.allocate_specific(busy)

    assert exc_info.value.ports == [busy]
    assert str(busy) in str(exc_info.value)


def test_allocate_specific_accepts_free_ports(port_allocator):
    base = port_allocator.allocate_range(2)
    port_allocator.allocate_specific(base, base + 1)


def test_is_port_in_use(port_allocator, listening_socket):
    busy = listening_socket.getsockname()[1]

    assert port_allocator.is_port_in_use(busy)
    assert not is_port_available(busy)


class TestPortRange:
    def test_get_port(self):
        port_range = PortRange(25000, 3)

        assert port_range.get_port(0) == 25000
        assert port_range.get_port(2) == 25002

    @pytest.mark.parametrize('index', [-1, 3, 10])
    def test_get_port_out_of_range(self, index):
        with pytest.raises(InvalidInputError):
            PortRange(25000, 3).get_port(index)

    def test_ports_returns_copy(self):
        port_range = PortRange(25000, 3)
        ports = port_range.ports()
        ports.append(1)

        assert port_range.ports() == [25000, 25001, 25002]

    def test_contains(self):
        port_range = PortRange(25000, 3)

        assert 25000 in port_range
        assert 25002 in port_range
        assert 25003 not in port_range
        assert 24999 not in port_range

    def test_negative_count_rejected(self):
        with pytest.raises(InvalidInputError):
            PortRange(25000, -1)
