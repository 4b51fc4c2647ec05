# ingestors/base.py
import time
import logging
import requests
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bzr_analytics.config import config
from bzr_analytics.errors import (
    CredentialsUnavailableError,
    OutOfOrderPageError,
    ProviderError,
    ProviderHardError,
    RateLimitExceededError,
)
from bzr_analytics.ingestors.key_pool import ApiKeyPool, mask_key
from bzr_analytics.models import TransferEvent

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ('rate limit', 'max rate', 'too many request', 'busy', 'limit reached')
NO_RECORDS_MARKERS = ('no transactions', 'no records', 'no logs', 'no token transfers')


# Outcome of one upstream request, decoded once per adapter
@dataclass
class Rows:
    rows: List[Dict] = field(default_factory=list)


@dataclass
class Empty:
    message: str = ''


@dataclass
class RateLimited:
    reason: str = 'rate_limit'
    retry_after: Optional[float] = None


@dataclass
class HardError:
    code: str
    message: str = ''
    status_code: Optional[int] = None


def is_rate_limit_like(*segments) -> bool:
    combined = ' '.join(str(s) for s in segments if s is not None).lower()
    return any(marker in combined for marker in RATE_LIMIT_MARKERS)


def is_no_records(*segments) -> bool:
    combined = ' '.join(str(s) for s in segments if s is not None).lower()
    return any(marker in combined for marker in NO_RECORDS_MARKERS)


class BaseTransferClient(ABC):
    """
    Paginated transfer fetcher for one explorer provider.

    Subclasses build request parameters, classify the provider envelope into an
    outcome and parse rows into TransferEvent. This class owns the retry loop:
    rate-limited responses back off the key and retry in place after a short
    sleep, hard errors raise immediately.
    """

    provider = 'base'

    def __init__(self, key_pool: ApiKeyPool, base_url: str, page_size_cap: int = None,
                 result_window: int = None, timeout: float = None, sleep=time.sleep):
        self.key_pool = key_pool
        self.base_url = base_url
        self.page_size_cap = page_size_cap or config.PAGE_SIZE_CAPS.get(self.provider, 1000)
        self.result_window = result_window or config.ETHERSCAN_RESULT_WINDOW
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'BZRAnalytics/1.0'
        })

    @abstractmethod
    def build_params(self, chain: Dict, api_key: str, page: int, page_size: int, sort: str,
                     start_block: Optional[int], end_block: Optional[int]) -> Dict:
        """Provider-specific query parameters"""
        pass

    @abstractmethod
    def classify(self, payload) -> object:
        """Decode a JSON payload into Rows, Empty, RateLimited or HardError"""
        pass

    @abstractmethod
    def parse_transfer(self, chain: Dict, raw: Dict) -> Optional[TransferEvent]:
        """Parse one provider row into a TransferEvent"""
        pass

    def clamp_page_size(self, page_size: Optional[int]) -> int:
        if not page_size or page_size <= 0:
            return self.page_size_cap
        return min(int(page_size), self.page_size_cap)

    def request(self, chain: Dict, params: Dict):
        """Issue one GET and classify the HTTP status before the envelope"""
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise ProviderError(
                f"Timeout after {self.timeout}s from {self.provider}",
                chain_id=chain['id'], provider=self.provider,
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(
                f"Request to {self.provider} failed: {e}",
                chain_id=chain['id'], provider=self.provider,
            )

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            return RateLimited(reason='http_429', retry_after=retry_after)

        if 400 <= response.status_code < 500:
            return HardError(code=f"http_{response.status_code}",
                             message=response.text[:200], status_code=response.status_code)

        if response.status_code >= 500:
            raise ProviderError(
                f"Server error {response.status_code} from {self.provider}",
                chain_id=chain['id'], provider=self.provider, status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            raise ProviderError(
                f"Invalid JSON from {self.provider}",
                chain_id=chain['id'], provider=self.provider, status_code=response.status_code,
            )
        return self.classify(payload)

    def fetch_page(self, chain: Dict, page: int = 1, page_size: int = None, sort: str = 'asc',
                   start_block: int = None, end_block: int = None) -> List[TransferEvent]:
        page_size = self.clamp_page_size(page_size)
        block_range = f"{start_block if start_block is not None else 0}-{end_block if end_block is not None else 'latest'}"
        rate_limit_retries = 0
        last_key = None

        while True:
            api_key = self.key_pool.next()
            if api_key is None and rate_limit_retries:
                # every key is cooling down; retry in place with the one just used
                api_key = last_key
            if api_key is None:
                raise CredentialsUnavailableError(
                    f"No usable {self.provider} API key for {chain['name']}",
                    chain_id=chain['id'], provider=self.provider,
                )

            last_key = api_key
            params = self.build_params(chain, api_key, page, page_size, sort, start_block, end_block)
            outcome = self.request(chain, params)

            if isinstance(outcome, Rows):
                events = []
                for raw in outcome.rows:
                    event = self.parse_transfer(chain, raw)
                    if event:
                        events.append(event)
                return self.order_page(chain, events, sort, start_block, end_block)

            if isinstance(outcome, Empty):
                return []

            if isinstance(outcome, RateLimited):
                self.key_pool.mark_failed(api_key, reason=outcome.reason)
                rate_limit_retries += 1
                if rate_limit_retries > config.MAX_RATE_LIMIT_RETRIES:
                    raise RateLimitExceededError(
                        f"Rate limit retries exhausted for {chain['name']} blocks {block_range}",
                        chain_id=chain['id'], provider=self.provider, status_code=429,
                    )
                delay = config.RATE_LIMIT_RETRY_SECONDS
                if outcome.retry_after:
                    delay = min(outcome.retry_after, config.RATE_LIMIT_RETRY_SECONDS * 5)
                logger.warning(
                    f"Rate limited on {chain['name']} ({self.provider}, key {mask_key(api_key)}, "
                    f"blocks {block_range}, page {page}). Waiting {delay}s"
                )
                self._sleep(delay)
                continue

            if isinstance(outcome, HardError):
                if outcome.code == 'invalid_key':
                    self.key_pool.mark_failed(api_key, reason='invalid_key',
                                              duration_seconds=self.key_pool.default_backoff_seconds * 10)
                logger.error(
                    f"Hard error from {self.provider} for {chain['name']} (key {mask_key(api_key)}, "
                    f"blocks {block_range}, page {page}): {outcome.code} {outcome.message}"
                )
                raise ProviderHardError(
                    f"{outcome.code}: {outcome.message}",
                    chain_id=chain['id'], provider=self.provider, status_code=outcome.status_code,
                )

            raise ProviderError(f"Unclassified outcome {outcome!r}", chain_id=chain['id'], provider=self.provider)

    def order_page(self, chain: Dict, events: List[TransferEvent], sort: str,
                   start_block: int = None, end_block: int = None) -> List[TransferEvent]:
        """Enforce the requested block order and reject rows outside the range"""
        for event in events:
            if start_block is not None and event.block_number < start_block:
                raise OutOfOrderPageError(
                    f"Block {event.block_number} below requested start {start_block} on {chain['name']}",
                    chain_id=chain['id'], provider=self.provider,
                )
            if end_block is not None and event.block_number > end_block:
                raise OutOfOrderPageError(
                    f"Block {event.block_number} above requested end {end_block} on {chain['name']}",
                    chain_id=chain['id'], provider=self.provider,
                )

        descending = sort == 'desc'
        ordered = sorted(events, key=lambda e: (e.block_number, e.log_index), reverse=descending)
        if ordered != events:
            logger.warning(f"Reordered {len(events)} rows from {self.provider} for {chain['name']} ({sort})")
        return ordered

    def fetch_total_count(self, chain: Dict) -> int:
        """Count upstream transfers by locating the last non-empty page"""
        page_size = min(config.TOTAL_COUNT_PAGE_SIZE, self.page_size_cap)
        max_page = max(1, self.result_window // page_size)

        first = self.fetch_page(chain, page=1, page_size=page_size, sort='asc')
        if len(first) < page_size:
            return len(first)

        last = self.fetch_page(chain, page=max_page, page_size=page_size, sort='asc')
        if len(last) == page_size:
            logger.info(f"Transfer count for {chain['name']} capped at result window {max_page * page_size}")
            return max_page * page_size
        if last:
            return (max_page - 1) * page_size + len(last)

        # last non-empty page lies in (lo, hi)
        lo, hi = 1, max_page
        lo_count = len(first)
        while hi - lo > 1:
            mid = (lo + hi) // 2
            rows = self.fetch_page(chain, page=mid, page_size=page_size, sort='asc')
            if rows:
                lo, lo_count = mid, len(rows)
                if len(rows) < page_size:
                    break
            else:
                hi = mid
        return (lo - 1) * page_size + lo_count

    def parse_timestamp(self, value) -> datetime:
        """Parse decimal or hex unix seconds into an aware datetime"""
        try:
            text = str(value)
            seconds = int(text, 16) if text.startswith('0x') else int(text)
            if seconds > 10 ** 12:
                seconds //= 1000
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not parse timestamp '{value}': {e}")
            return datetime.now(timezone.utc)
