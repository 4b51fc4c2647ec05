"""
Cronos explorer client.

The Cronos explorer does not offer the Etherscan v2 multichain token listing,
so transfers are read as raw ERC20 Transfer logs (logs/getLogs) and decoded
here: addresses come from the indexed topics, the amount from the data word,
and block number, log index and timestamp are hex encoded.
"""
from typing import Dict, List, Optional
from .base import BaseTransferClient, Empty, HardError, RateLimited, Rows, is_no_records, is_rate_limit_like
from bzr_analytics.config import config
from bzr_analytics.errors import ProviderError
from bzr_analytics.models import TransferEvent
import logging
import requests

logger = logging.getLogger(__name__)

# First window scanned back from the tip for newest-first reads; later windows double
RECENT_BLOCK_SPAN = 200_000


def _hex_to_int(value) -> int:
    if value is None or value == '':
        return 0
    text = str(value)
    return int(text, 16) if text.startswith('0x') else int(text)


def _topic_to_address(topic: str) -> str:
    return '0x' + topic[-40:].lower()


class CronosClient(BaseTransferClient):
    provider = 'cronos'

    def __init__(self, key_pool, base_url: str = None, token_address: str = None, **kwargs):
        super().__init__(key_pool, base_url or config.CRONOS_API_BASE_URL, **kwargs)
        self.token_address = token_address or config.BZR_TOKEN_ADDRESS

    def build_params(self, chain, api_key, page, page_size, sort, start_block, end_block) -> Dict:
        return {
            'module': 'logs',
            'action': 'getLogs',
            'address': self.token_address,
            'topic0': config.TRANSFER_TOPIC,
            'fromBlock': start_block if start_block is not None else 0,
            'toBlock': end_block if end_block is not None else 'latest',
            'page': page,
            'offset': page_size,
            'apikey': api_key,
        }

    def classify(self, payload):
        if not isinstance(payload, dict):
            return HardError(code='malformed_envelope', message=str(payload)[:200])

        # JSON-RPC style error object
        error = payload.get('error')
        if isinstance(error, dict):
            message = error.get('message') or ''
            if is_rate_limit_like(message):
                return RateLimited(reason=message)
            return HardError(code=f"rpc_{error.get('code', 'error')}", message=message)

        status = str(payload.get('status', ''))
        message = payload.get('message') or ''
        result = payload.get('result')

        if isinstance(result, list) and (status == '1' or (status == '' and result)):
            return Rows(rows=result)

        result_text = result if isinstance(result, str) else ''
        if is_no_records(message, result_text) or (isinstance(result, list) and not result):
            return Empty(message=message)
        if is_rate_limit_like(message, result_text):
            return RateLimited(reason=result_text or message)
        if 'invalid api key' in f"{message} {result_text}".lower():
            return HardError(code='invalid_key', message=result_text or message)
        return HardError(code='upstream_error', message=f"{message} {result_text}".strip())

    def parse_transfer(self, chain, raw) -> Optional[TransferEvent]:
        topics = raw.get('topics') or []
        if len(topics) < 3 or (topics[0] or '').lower() != config.TRANSFER_TOPIC:
            return None
        try:
            return TransferEvent(
                chain_id=chain['id'],
                block_number=_hex_to_int(raw['blockNumber']),
                tx_hash=raw['transactionHash'].lower(),
                log_index=_hex_to_int(raw.get('logIndex')),
                timestamp=self.parse_timestamp(raw.get('timeStamp')),
                from_address=_topic_to_address(topics[1]),
                to_address=_topic_to_address(topics[2]),
                value_raw=_hex_to_int(raw.get('data') or '0x0'),
                method_id=None,
                raw_payload=raw,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed Cronos log {raw.get('transactionHash')}: {e}")
            return None

    def fetch_latest_block(self, chain: Dict) -> int:
        api_key = self.key_pool.next() or ''
        params = {'module': 'block', 'action': 'eth_block_number', 'apikey': api_key}
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            result = response.json().get('result')
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Latest block lookup failed on {chain['name']}: {e}",
                                chain_id=chain['id'], provider=self.provider)
        if not isinstance(result, str):
            raise ProviderError(f"Unexpected block number payload {result!r}",
                                chain_id=chain['id'], provider=self.provider)
        return _hex_to_int(result)

    def fetch_page(self, chain, page=1, page_size=None, sort='asc', start_block=None, end_block=None):
        if sort != 'desc':
            return super().fetch_page(chain, page=page, page_size=page_size, sort=sort,
                                      start_block=start_block, end_block=end_block)

        # getLogs only pages ascending, so newest-first pages are cut from the tail of the range
        page_size = self.clamp_page_size(page_size)
        ceiling = end_block if end_block is not None else self.fetch_latest_block(chain)
        floor = start_block if start_block is not None else 0
        newest = list(reversed(self.fetch_newest(chain, page * page_size, floor, ceiling)))
        offset = (page - 1) * page_size
        return newest[offset:offset + page_size]

    def fetch_newest(self, chain: Dict, needed: int, floor: int, ceiling: int) -> List[TransferEvent]:
        """
        Collect at least `needed` of the newest transfers in [floor, ceiling], ascending.

        Walks back from the ceiling in windows that double in width, so sparse
        chains reach genesis in a handful of steps.
        """
        collected: List[TransferEvent] = []
        span = RECENT_BLOCK_SPAN
        hi = ceiling
        while hi >= floor and len(collected) < needed:
            lo = max(floor, hi - span + 1)
            collected = self._read_tail(chain, lo, hi, needed - len(collected)) + collected
            hi = lo - 1
            span *= 2
        return collected

    def _read_tail(self, chain, lo, hi, needed):
        rows, complete = self._read_window(chain, lo, hi)
        if complete or lo >= hi:
            if not complete:
                logger.warning(f"Block {lo} on {chain['name']} holds more logs than the result window")
            return rows

        # too many logs to list in one go; the upper half holds the newest ones
        mid = (lo + hi) // 2
        upper = self._read_tail(chain, mid + 1, hi, needed)
        if len(upper) >= needed:
            return upper
        return self._read_tail(chain, lo, mid, needed - len(upper)) + upper

    def _read_window(self, chain, lo, hi):
        size = self.page_size_cap
        rows = []
        for page in range(1, max(1, self.result_window // size) + 1):
            batch = super().fetch_page(chain, page=page, page_size=size, sort='asc',
                                       start_block=lo, end_block=hi)
            rows.extend(batch)
            if len(batch) < size:
                return rows, True
        return rows, False
