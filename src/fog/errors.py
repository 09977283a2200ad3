"""Error kinds shared across fog components."""


class FogError(Exception):
    """Base class for errors surfaced to fog users."""


class ValidationError(FogError, ValueError):
    """Bad input: unknown repo, invalid branch, empty prompt."""


class ConfigError(FogError):
    """Missing token, unknown tool, or no AI tools installed."""


class StoreError(FogError):
    """Raised when the state store cannot complete an operation."""


class TaskStateError(StoreError):
    """Raised on an illegal task state transition or a write to a finished task."""
