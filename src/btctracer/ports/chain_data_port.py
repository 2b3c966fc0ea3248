from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from btctracer.core.dto import OutPoint, Transaction
from btctracer.core.errors import NotFoundError


class ChainDataPort(ABC):
    """
    Abstract Class for fetching UTXO-chain facts for tracing.

    Every call is a coroutine and may fail with a DataSourceError subclass:
    NotFoundError, SourceUnavailableError / RateLimitError (transient),
    InvalidQueryError, UnsupportedQueryError or DataIntegrityError.
    Implementations must tolerate many concurrent in-flight calls.
    """

    # --- Transactions ---

    @abstractmethod
    async def get_transaction(self, txid: str) -> Transaction:
        raise NotImplementedError

    # --- Spends (None = output is unspent) ---

    @abstractmethod
    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        raise NotImplementedError

    # --- Address seeding ---

    @abstractmethod
    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        raise NotImplementedError

    # --- Batch helpers ---

    async def get_transactions_batch(self, txids: Sequence[str]) -> List[Optional[Transaction]]:
        async def one(txid: str) -> Optional[Transaction]:
            try:
                return await self.get_transaction(txid)
            except NotFoundError:
                return None

        return list(await asyncio.gather(*(one(t) for t in txids)))

    async def get_spending_transactions_batch(
        self,
        outpoints: Sequence[OutPoint],
    ) -> List[Optional[Transaction]]:
        return list(await asyncio.gather(*(self.get_spending_transaction(o) for o in outpoints)))

    # --- lifecycle ---

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "ChainDataPort":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
