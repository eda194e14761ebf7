"""Error taxonomy shared by chain backends, the tracking engine and the query path."""
from fastapi import status


class W3HubError(Exception):
    """Base class for all w3hub errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    transient: bool = False

    def __init__(self, message: str = "", *, chain: str | None = None, address: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.chain = chain
        self.address = address


class InvalidAddress(W3HubError):
    """Malformed address for the chain. Permanent; terminal for a WatchTarget."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnknownChain(W3HubError):
    """No backend is registered under the requested chain id."""

    status_code = status.HTTP_404_NOT_FOUND


class BackendUnavailable(W3HubError):
    """Network or RPC failure talking to a chain backend. Retried with backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    transient = True


class StorageFailure(W3HubError):
    """Persistence layer failure. Retried; persistent failure degrades health."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    transient = True


class NotFound(W3HubError):
    """Query-path only: the requested record does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


__all__ = [
    "W3HubError",
    "InvalidAddress",
    "UnknownChain",
    "BackendUnavailable",
    "StorageFailure",
    "NotFound",
]
