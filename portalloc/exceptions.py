"""Custom exceptions for portalloc with contextual error information."""
from typing import List


class PortallocError(Exception):
    """Base exception for all portalloc errors."""

    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        if self.context:
            context_str = ', '.join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class InvalidInputError(PortallocError, ValueError):
    """Raised when a caller passes a non-positive count or out-of-range index."""
    pass


class PortsUnavailableError(PortallocError):
    """Raised when one or more explicitly requested ports cannot be bound."""

    def __init__(self, ports: List[int], context: dict = None):
        self.ports = list(ports)
        super().__init__(f"Ports unavailable: {self.ports}", context)


class ExhaustionError(PortallocError):
    """Raised when a bounded retry loop gives up."""
    pass


class PortExhaustionError(ExhaustionError):
    """Raised when no free consecutive port range was found."""
    pass


class IdentifierExhaustionError(ExhaustionError):
    """Raised when no unused isolation ID could be generated."""
    pass


class LockExistsError(PortallocError):
    """Raised when a lock file for the given isolation ID already exists."""

    def __init__(self, isolation_id: str, lock_file, context: dict = None):
        self.isolation_id = isolation_id
        self.lock_file = lock_file
        super().__init__(f"Lock already exists for {isolation_id}: {lock_file}", context)


class NotFoundError(PortallocError):
    """Raised when a referenced resource is missing."""
    pass


class LockMissingError(NotFoundError):
    """Raised by validation when the lock file is gone."""
    pass


class TempDirMissingError(NotFoundError):
    """Raised by validation when the temp directory is gone."""
    pass


class EnvFileMissingError(NotFoundError):
    """Raised by validation when the descriptor file is gone."""
    pass


class EnvironmentNotFoundError(NotFoundError):
    """Raised when the state document has no entry for an ID."""
    pass


class CleanupError(PortallocError):
    """Raised when cleanup hit real errors after attempting every step."""

    def __init__(self, isolation_id: str, errors: List[str]):
        self.isolation_id = isolation_id
        self.errors = list(errors)
        super().__init__(f"Cleanup errors for {isolation_id}: {'; '.join(self.errors)}")


class MetadataError(PortallocError):
    """Raised when a lock file name or body cannot be parsed."""
    pass


class StateError(PortallocError):
    """Raised when the state document cannot be read or written."""
    pass


class StateCorruptedError(StateError):
    """Raised when the state document is not valid JSON."""
    pass
