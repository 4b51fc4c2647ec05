# ingestors/registry.py
import threading
from typing import Dict

from bzr_analytics.config import config, provider_for_chain
from bzr_analytics.ingestors.cronos import CronosClient
from bzr_analytics.ingestors.etherscan import EtherscanClient
from bzr_analytics.ingestors.key_pool import KeyPoolRegistry

CLIENT_CLASSES = {
    'etherscan': EtherscanClient,
    'cronos': CronosClient,
}


class ClientRegistry:
    """
    One client per chain, each with its own HTTP session, sharing the
    provider's key pool. The live ingester and the backfill build separate
    registries so their key rotation never interferes.
    """

    def __init__(self, key_pools: KeyPoolRegistry = None, client_kwargs: Dict = None):
        self.key_pools = key_pools or KeyPoolRegistry(config.env_keys())
        self.client_kwargs = client_kwargs or {}
        self._clients = {}
        self._lock = threading.Lock()

    def client_for(self, chain: Dict):
        with self._lock:
            client = self._clients.get(chain['id'])
            if client is None:
                provider = provider_for_chain(chain)
                client_class = CLIENT_CLASSES.get(provider)
                if client_class is None:
                    raise ValueError(f"No client for provider '{provider}' (chain {chain['name']})")
                client = client_class(self.key_pools.pool_for(provider), **self.client_kwargs)
                self._clients[chain['id']] = client
            return client

    def pool_for_chain(self, chain: Dict):
        return self.key_pools.pool_for(provider_for_chain(chain))
