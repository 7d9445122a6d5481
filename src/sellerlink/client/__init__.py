"""
Resilient outbound client layer.

This package provides the building blocks shared by every marketplace:
- CredentialManager (access-token lifecycle, single-flight refresh)
- RequestSigner (AWS SigV4, webhook HMAC)
- RateLimiter (per-category token bucket fed by server headers)
- RetryPolicy (classification, exponential backoff with jitter)
- BatchProcessor (bounded-concurrency chunked execution)
- RequestExecutor (composition of all of the above around httpx)
"""

from sellerlink.client.batch import BatchProcessor
from sellerlink.client.credentials import CredentialManager, LwaTokenRefresher, TokenRefresher
from sellerlink.client.executor import RequestExecutor
from sellerlink.client.rate_limiter import (
    AMAZON_HEADERS,
    TAKEALOT_HEADERS,
    BucketDefaults,
    RateLimiter,
    RateLimitHeaders,
)
from sellerlink.client.retry import RetryPolicy, classify_status
from sellerlink.client.signing import (
    AwsCredentials,
    RequestSigner,
    compute_webhook_signature,
    verify_webhook_signature,
)

__all__ = [
    "AMAZON_HEADERS",
    "AwsCredentials",
    "BatchProcessor",
    "BucketDefaults",
    "CredentialManager",
    "LwaTokenRefresher",
    "RateLimitHeaders",
    "RateLimiter",
    "RequestExecutor",
    "RequestSigner",
    "RetryPolicy",
    "TAKEALOT_HEADERS",
    "TokenRefresher",
    "classify_status",
    "compute_webhook_signature",
    "verify_webhook_signature",
]
