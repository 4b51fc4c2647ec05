# ingestors/etherscan.py
from typing import Dict, Optional
from .base import BaseTransferClient, Empty, HardError, RateLimited, Rows, is_no_records, is_rate_limit_like
from bzr_analytics.config import config
from bzr_analytics.models import TransferEvent
import logging

logger = logging.getLogger(__name__)


class EtherscanClient(BaseTransferClient):
    """Etherscan API v2 token transfer listing (account/tokentx), one endpoint for all EVM chains"""

    provider = 'etherscan'

    def __init__(self, key_pool, base_url: str = None, token_address: str = None, **kwargs):
        super().__init__(key_pool, base_url or config.ETHERSCAN_API_URL, **kwargs)
        self.token_address = token_address or config.BZR_TOKEN_ADDRESS

    def build_params(self, chain, api_key, page, page_size, sort, start_block, end_block) -> Dict:
        params = {
            'chainid': chain['id'],
            'module': 'account',
            'action': 'tokentx',
            'contractaddress': self.token_address,
            'page': page,
            'offset': page_size,
            'sort': sort,
            'apikey': api_key,
        }
        if start_block is not None:
            params['startblock'] = start_block
        if end_block is not None:
            params['endblock'] = end_block
        return params

    def classify(self, payload):
        if not isinstance(payload, dict):
            return HardError(code='malformed_envelope', message=str(payload)[:200])

        status = str(payload.get('status', ''))
        message = payload.get('message') or ''
        result = payload.get('result')

        if status == '1' and isinstance(result, list):
            return Rows(rows=result)

        result_text = result if isinstance(result, str) else ''
        if status == '0':
            if is_no_records(message, result_text):
                return Empty(message=message)
            if is_rate_limit_like(message, result_text):
                return RateLimited(reason=result_text or message or 'rate_limit')
            if 'invalid api key' in result_text.lower():
                return HardError(code='invalid_key', message=result_text)
            return HardError(code='upstream_error', message=f"{message} {result_text}".strip())

        if is_rate_limit_like(message, result_text):
            return RateLimited(reason=result_text or message or 'rate_limit')
        return HardError(code='unexpected_envelope', message=str(payload)[:200])

    def parse_transfer(self, chain, raw) -> Optional[TransferEvent]:
        try:
            log_index = raw.get('logIndex')
            if log_index in (None, ''):
                log_index = raw.get('transactionIndex', 0)
            method_input = raw.get('input') or ''
            return TransferEvent(
                chain_id=chain['id'],
                block_number=int(raw['blockNumber']),
                tx_hash=raw['hash'].lower(),
                log_index=int(log_index or 0),
                timestamp=self.parse_timestamp(raw.get('timeStamp')),
                from_address=(raw.get('from') or '').lower(),
                to_address=(raw.get('to') or '').lower(),
                value_raw=int(raw.get('value') or 0),
                method_id=method_input[:10] if method_input.startswith('0x') else None,
                raw_payload=raw,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed {chain['name']} transfer {raw.get('hash')}: {e}")
            return None
