"""
Error types shared by the ingestion pipeline and the analytics engine.

Provider errors carry enough context (chain, provider, HTTP status) for the
ingestion loop to log a failure without re-parsing upstream payloads.
"""
from typing import Optional


class ProviderError(Exception):
    """Upstream explorer request failed"""

    def __init__(self, message: str, chain_id: Optional[int] = None,
                 provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.chain_id = chain_id
        self.provider = provider
        self.status_code = status_code


class RateLimitExceededError(ProviderError):
    """Rate-limit retries were exhausted for a single request"""


class ProviderHardError(ProviderError):
    """Non-retryable upstream error, e.g. malformed parameters or HTTP 400"""


class OutOfOrderPageError(ProviderError):
    """A page could not be brought into ascending block order"""


class CredentialsUnavailableError(ProviderError):
    """Every key for the provider is missing or backed off"""


class StoreUnavailableError(Exception):
    """The transfer store is unreachable or not initialized"""


class AnalyticsError(Exception):
    """Analytics request failed; `code` is safe to return to API consumers"""

    def __init__(self, code: str, message: str, status: int = 500):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def to_dict(self):
        return {'success': False, 'error': {'code': self.code, 'message': self.message}}
