"""Custom exception hierarchy for Triad.

All exceptions inherit from TriadError so callers can catch broadly
or narrowly as needed.
"""


class TriadError(Exception):
    """Base exception for all Triad errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(TriadError):
    """Invalid or missing configuration."""


class NoEligibleAgentError(ConfigError):
    """No registered worker can handle a phase."""

    def __init__(self, message: str, required_capabilities: list[str] | None = None, empty_registry: bool = False):
        self.required_capabilities = list(required_capabilities or [])
        self.empty_registry = empty_registry
        super().__init__(message)


# ---------------------------------------------------------------------------
# Durable state
# ---------------------------------------------------------------------------

class StateError(TriadError):
    """Failed to read or write job state."""


class SchemaVersionError(StateError):
    """Persisted document carries a schema version this code cannot read."""

    def __init__(self, found: object, expected: int, source: str = "document"):
        self.found = found
        self.expected = expected
        super().__init__(f"Unsupported {source} schema_version {found!r}; expected {expected}")


class ResumeError(StateError):
    """Job cannot be resumed safely."""


class InvalidTransitionError(StateError):
    """Task pipeline state transition is not allowed."""


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

class WorkerError(TriadError):
    """A collaborator (phase worker, backlog, registry) raised during a call."""


class WorkerTimeoutError(WorkerError):
    """A worker command exceeded its time limit."""
