"""Error taxonomy for recoverable engine failures.

``ConfigError`` lives in :mod:`layered_memory.config` next to the settings it
guards.  The errors here are always recovered inside the engine and never
reach the host.
"""


class ExternalCallError(Exception):
    """An embedding, vector-store or reranker call failed or timed out."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class PersistenceError(Exception):
    """A JSON side file could not be read, parsed or written."""
