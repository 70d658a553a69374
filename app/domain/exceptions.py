from uuid import UUID


class ConfigurationError(RuntimeError):
    """The transition table for a workspace is malformed or incomplete."""

    def __init__(self, message: str, workspace_id: UUID | None = None) -> None:
        super().__init__(message)
        self.workspace_id = workspace_id


class ConflictError(RuntimeError):
    """A concurrent writer won: lost claim or stale optimistic version."""


class NotFoundError(LookupError):
    """The referenced customer, state or queue entry does not exist."""


class TransientStoreError(ConnectionError):
    """The store is temporarily unavailable; the operation may be retried."""
