"""
Dynamic port allocation for parallel test environments.

Ports are never reserved. The allocator picks a random base port inside the
configured window and verifies that every port of the run can currently be
bound by a TCP listener. Another process may still grab a port between the
check and its actual use; callers should bind promptly.
"""

import logging
import secrets
import socket
import time
from dataclasses import dataclass, field
from typing import List, Optional

from . import config
from .exceptions import InvalidInputError, PortExhaustionError, PortsUnavailableError

logger = logging.getLogger('portalloc')


def is_port_available(port: int, host: str = '') -> bool:
    """
    Check if a port can be bound by a TCP listener right now.

    Args:
        port: Port number to check
        host: Interface to bind, all interfaces by default

    Returns:
        True if port is available, False otherwise
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            s.listen(1)
            return True
    except OSError:
        return False


@dataclass(frozen=True)
class PortRange:
    """An allocated run of consecutive ports: base_port .. base_port+count-1."""

    base_port: int
    count: int

    def __post_init__(self):
        if self.count < 0:
            raise InvalidInputError(f"Port count must be non-negative, got {self.count}")

    def ports(self) -> List[int]:
        """Return all ports in the range as a new list."""
        return [self.base_port + i for i in range(self.count)]

    def get_port(self, index: int) -> int:
        """
        Get a port by zero-based index.

        Raises:
            InvalidInputError: If index is outside [0, count)
        """
        if index < 0 or index >= self.count:
            raise InvalidInputError(
                f"Index {index} out of range [0,{self.count})",
                context={'base_port': self.base_port}
            )
        return self.base_port + index

    def __contains__(self, port: int) -> bool:
        return self.base_port <= port < self.base_port + self.count

    def __len__(self) -> int:
        return self.count


@dataclass
class AllocatorConfig:
    """Port search window [start_port, end_port) and retry policy."""

    start_port: int = field(default_factory=config.default_start_port)
    end_port: int = field(default_factory=config.default_end_port)
    max_retries: int = field(default_factory=config.default_port_retries)
    retry_delay: float = config.DEFAULT_PORT_RETRY_DELAY


class PortAllocator:
    """Stateless allocator; every call is a point-in-time availability check."""

    def __init__(self, allocator_config: Optional[AllocatorConfig] = None, host: str = ''):
        self.config = allocator_config or AllocatorConfig()
        self.host = host

    def allocate_range(self, ports_needed: int) -> int:
        """
        Find a base port whose next ports_needed ports are all bindable.

        Args:
            ports_needed: Number of consecutive ports (must be > 0)

        Returns:
            Base port of the run

        Raises:
            InvalidInputError: If ports_needed <= 0 or the window is too small
            PortExhaustionError: If no free run was found within max_retries
        """
        if ports_needed <= 0:
            raise InvalidInputError(f"ports_needed must be positive, got {ports_needed}")

        span = self.config.end_port - self.config.start_port - ports_needed
        if span <= 0:
            raise InvalidInputError(
                f"Insufficient port range for {ports_needed} ports",
                context={'start_port': self.config.start_port, 'end_port': self.config.end_port}
            )

        for attempt in range(self.config.max_retries):
            base_port = self.config.start_port + secrets.randbelow(span)

            if self._are_ports_available(base_port, ports_needed):
                logger.debug(f"Allocated ports {base_port}-{base_port + ports_needed - 1} "
                             f"(attempt {attempt + 1})")
                return base_port

            logger.debug(f"Port range at {base_port} busy (attempt {attempt + 1}/"
                         f"{self.config.max_retries}), retrying in {self.config.retry_delay}s")
            time.sleep(self.config.retry_delay)

        raise PortExhaustionError(
            f"Unable to allocate {ports_needed} consecutive ports after "
            f"{self.config.max_retries} attempts",
            context={'start_port': self.config.start_port, 'end_port': self.config.end_port}
        )

    def allocate_port_range(self, ports_needed: int) -> PortRange:
        """Same as allocate_range but returns a PortRange."""
        return PortRange(self.allocate_range(ports_needed), ports_needed)

    def allocate_specific(self, *ports: int) -> None:
        """
        Verify that every listed port is currently bindable.

        Raises:
            PortsUnavailableError: Naming every port that could not be bound
        """
        unavailable = [port for port in ports if not is_port_available(port, self.host)]
        if unavailable:
            raise PortsUnavailableError(unavailable)

    def is_port_in_use(self, port: int) -> bool:
        return not is_port_available(port, self.host)

    def _are_ports_available(self, base_port: int, count: int) -> bool:
        for port in range(base_port, base_port + count):
            if not is_port_available(port, self.host):
                return False
        return True
