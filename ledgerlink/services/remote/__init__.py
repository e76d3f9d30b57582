"""Remote ledger service client."""

from ledgerlink.services.remote.interface import (
    AuthError,
    LedgerClientInterface,
    LedgerError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailable,
)
from ledgerlink.services.remote.http_client import HttpLedgerClient

__all__ = [
    "AuthError",
    "HttpLedgerClient",
    "LedgerClientInterface",
    "LedgerError",
    "NetworkError",
    "NotFoundError",
    "RateLimitError",
    "ServiceUnavailable",
]
