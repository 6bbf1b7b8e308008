class CacheCoordError(Exception):
    """Base class for all exceptions in FastAPI-CacheCoord."""


class CacheError(CacheCoordError):
    """Exception raised for cache-related errors."""


class BackendNotFoundError(CacheError):
    """Exception raised when no coordinator has been configured."""


class StoreError(CacheCoordError):
    """Exception raised by a store adapter."""


class StoreUnavailableError(StoreError):
    """The authoritative store could not be reached or timed out."""


class KeyNotFoundError(StoreError):
    """The key does not exist in the authoritative store."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Key not found: {key}")
        self.key = key


class ConcurrentInvalidationRaceError(CacheError):
    """A load finished after the key was invalidated by a newer mutation."""


class ClientError(CacheCoordError):
    """Exception raised by the client revalidation cache."""


class RemoteError(ClientError):
    """The remote cache surface returned an unexpected response."""


class ClientRollbackError(ClientError):
    """An optimistic mutation failed remotely and the local copy was restored."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key
