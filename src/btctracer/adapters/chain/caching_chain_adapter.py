from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple, Union

from btctracer.config.settings import CACHE_MAX_ENTRIES, CACHE_TTL_SEC
from btctracer.core.dto import OutPoint, Transaction
from btctracer.ports.chain_data_port import ChainDataPort

logger = logging.getLogger(__name__)

# ("tx", txid) or ("spend", outpoint)
CacheKey = Tuple[str, Union[str, OutPoint]]


class CachingChainAdapter(ChainDataPort):
    """
    TTL + LRU cache in front of any ChainDataPort.

    Caches transactions and confirmed spends. An unspent answer is never
    cached since the output may be spent between two lookups. Address
    lookups pass straight through. Errors are never cached.
    """

    def __init__(
        self,
        inner: ChainDataPort,
        ttl: float = CACHE_TTL_SEC,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inner = inner
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._cache: "OrderedDict[CacheKey, Tuple[Transaction, float]]" = OrderedDict()

        self.hits = 0
        self.misses = 0

    # ---------- internal ----------

    def _lookup(self, key: CacheKey) -> Optional[Transaction]:
        item = self._cache.get(key)
        if item is None:
            self.misses += 1
            return None
        tx, inserted_at = item
        if self._clock() - inserted_at >= self._ttl:
            del self._cache[key]
            self.misses += 1
            return None
        self._cache.move_to_end(key)
        self.hits += 1
        return tx

    def _store(self, key: CacheKey, tx: Transaction) -> None:
        self._cache.pop(key, None)
        self._cache[key] = (tx, self._clock())
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    # ---------- port methods ----------

    async def get_transaction(self, txid: str) -> Transaction:
        key: CacheKey = ("tx", txid)
        tx = self._lookup(key)
        if tx is not None:
            return tx
        tx = await self.inner.get_transaction(txid)
        self._store(key, tx)
        return tx

    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        key: CacheKey = ("spend", outpoint)
        tx = self._lookup(key)
        if tx is not None:
            return tx
        tx = await self.inner.get_spending_transaction(outpoint)
        if tx is not None:
            self._store(key, tx)
            self._store(("tx", tx.txid), tx)
        return tx

    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        return await self.inner.get_outputs_for_address(address)

    async def close(self) -> None:
        logger.debug("cache closing: %d hit(s), %d miss(es)", self.hits, self.misses)
        await self.inner.close()
