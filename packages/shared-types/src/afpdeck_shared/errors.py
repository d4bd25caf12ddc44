"""Error taxonomy shared by every AccessStorage backend.

Each exception carries a stable ``kind`` string so callers (e.g. an HTTP adapter)
can map failures to status codes without importing driver exceptions.
"""


class StorageError(Exception):
    """Base class for persistence-layer failures."""

    kind = "storage"


class NotConnectedError(StorageError):
    """Operation invoked before connect() or after disconnect()."""

    kind = "not_connected"

    def __init__(self, backend: str) -> None:
        super().__init__(f"{backend} is not connected; call connect() first")
        self.backend = backend


class NotFoundError(StorageError):
    """Scoped read, update or delete targeting a key with no record."""

    kind = "not_found"

    def __init__(self, entity: str, owner: str, key: str) -> None:
        super().__init__(f"{entity} not found: owner={owner!r} key={key!r}")
        self.entity = entity
        self.owner = owner
        self.key = key


class ConfigurationError(StorageError):
    """Backend selection requested with missing or invalid connection parameters."""

    kind = "configuration"


class InvalidKeyError(StorageError, ValueError):
    """A key value that can never identify a real record (e.g. the ALL sentinel on write)."""

    kind = "invalid_key"


class BackendError(StorageError):
    """Underlying driver or network failure. The original exception is kept as ``cause``."""

    kind = "backend"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
