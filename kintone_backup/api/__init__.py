"""
kintone_backup.api - Remote data service client

REST client for kintone with pagination, batching and retry handling.
"""

from kintone_backup.api.kintone_api import (
    AuthenticationError,
    KintoneAPI,
    KintoneAPIError,
    RateLimitError,
    UpsertResult,
)
from kintone_backup.api.retry import ApiStats, RetryPolicy

__all__ = [
    "ApiStats",
    "AuthenticationError",
    "KintoneAPI",
    "KintoneAPIError",
    "RateLimitError",
    "RetryPolicy",
    "UpsertResult",
]
