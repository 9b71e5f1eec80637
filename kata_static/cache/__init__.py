"""Remote component cache module.

This module handles:
- Cache pointer lookup and tarball download/verification
- Auxiliary root-hash artifacts
- Root-hash consistency checks for the confidential shim
"""

from kata_static.cache.client import (
    CacheClient,
    CacheError,
    CacheLookup,
    CacheMiss,
    DownloadError,
    ExtractionError,
    VerificationError,
    cache_job_url,
)
from kata_static.cache.consistency import (
    ConsistencyRejection,
    ConsistencyResult,
    RootHashValidator,
)

__all__ = [
    "CacheClient",
    "CacheError",
    "CacheLookup",
    "CacheMiss",
    "ConsistencyRejection",
    "ConsistencyResult",
    "DownloadError",
    "ExtractionError",
    "RootHashValidator",
    "VerificationError",
    "cache_job_url",
]
