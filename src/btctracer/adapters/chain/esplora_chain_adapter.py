from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from btctracer.config.settings import (
    ESPLORA_BASE_URL,
    ESPLORA_MAX_ADDRESS_PAGES,
    ESPLORA_REQUESTS_PER_SEC,
    ESPLORA_TIMEOUT_SEC,
)

from btctracer.adapters.chain.rate_limiter import SimpleRateLimiter
from btctracer.core.dto import OutPoint, Transaction, TxInput, TxOutput
from btctracer.core.errors import (
    DataIntegrityError,
    InvalidQueryError,
    NotFoundError,
    RateLimitError,
    SourceUnavailableError,
)
from btctracer.ports.chain_data_port import ChainDataPort

logger = logging.getLogger(__name__)


class EsploraChainAdapter(ChainDataPort):
    """
    Esplora REST API (blockstream.info, mempool.space or self-hosted).

    - GET /tx/{txid}                      transaction JSON incl. prevouts
    - GET /tx/{txid}/outspend/{vout}      spend status of one output
    - GET /address/{addr}/txs[/chain/{last_txid}]   address history pages
    """

    def __init__(
        self,
        base_url: str = ESPLORA_BASE_URL,
        requests_per_sec: float = ESPLORA_REQUESTS_PER_SEC,
        timeout: float = ESPLORA_TIMEOUT_SEC,
        max_address_pages: int = ESPLORA_MAX_ADDRESS_PAGES,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_address_pages = max_address_pages
        self._rl = SimpleRateLimiter(requests_per_sec)
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ---------- internal ----------

    async def _get(self, path: str) -> Any:
        await self._rl.wait()
        try:
            resp = await self._client.get(path)
        except httpx.TimeoutException as e:
            raise SourceUnavailableError(f"Esplora timeout on {path}") from e
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"Esplora request failed on {path}: {e}") from e

        status = resp.status_code
        if status == 404:
            raise NotFoundError(f"Esplora: {path} not found")
        if status == 400:
            raise InvalidQueryError(f"Esplora rejected {path}: {resp.text.strip()}")
        if status == 429:
            raise RateLimitError(f"Esplora rate limited on {path}")
        if status >= 400:
            raise SourceUnavailableError(f"Esplora HTTP {status} on {path}")

        try:
            return resp.json()
        except ValueError as e:
            raise DataIntegrityError(f"Esplora returned invalid JSON for {path}") from e

    @staticmethod
    def _parse_tx(data: Dict[str, Any]) -> Transaction:
        try:
            txid = str(data["txid"]).lower()
            inputs = []
            for vin in data.get("vin") or []:
                if vin.get("is_coinbase"):
                    inputs.append(TxInput(previous_output=None, sequence=int(vin.get("sequence", 0xFFFFFFFF))))
                    continue
                prevout = vin.get("prevout") or {}
                value = prevout.get("value")
                inputs.append(TxInput(
                    previous_output=OutPoint(str(vin["txid"]).lower(), int(vin["vout"])),
                    value=int(value) if value is not None else None,
                    address=prevout.get("scriptpubkey_address"),
                    sequence=int(vin.get("sequence", 0xFFFFFFFF)),
                ))
            outputs = [
                TxOutput(
                    outpoint=OutPoint(txid, n),
                    value=int(vout["value"]),
                    script_pubkey=vout.get("scriptpubkey", ""),
                    address=vout.get("scriptpubkey_address"),
                )
                for n, vout in enumerate(data.get("vout") or [])
            ]
            st = data.get("status") or {}
            return Transaction(
                txid=txid,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                block_height=st.get("block_height"),
                confirmed=bool(st.get("confirmed", False)),
                timestamp=st.get("block_time"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"Malformed Esplora transaction: {e}") from e

    # ---------- port methods ----------

    async def get_transaction(self, txid: str) -> Transaction:
        data = await self._get(f"/tx/{txid}")
        if not isinstance(data, dict):
            raise DataIntegrityError(f"Esplora /tx/{txid}: expected an object")
        tx = self._parse_tx(data)
        if tx.txid != txid.lower():
            raise DataIntegrityError(f"Esplora returned {tx.txid} for {txid}")
        return tx

    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        data = await self._get(f"/tx/{outpoint.txid}/outspend/{outpoint.vout}")
        if not isinstance(data, dict):
            raise DataIntegrityError(f"Esplora outspend {outpoint}: expected an object")
        if not data.get("spent"):
            return None
        spender = data.get("txid")
        if not spender:
            raise DataIntegrityError(f"Esplora reports {outpoint} spent without a spending txid")
        return await self.get_transaction(str(spender).lower())

    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        found: List[OutPoint] = []
        seen = set()
        path = f"/address/{address}/txs"
        for _ in range(self._max_address_pages):
            rows = await self._get(path)
            if not isinstance(rows, list):
                raise DataIntegrityError(f"Esplora {path}: expected a list")
            if not rows:
                break

            confirmed = 0
            for row in rows:
                tx = self._parse_tx(row)
                confirmed += 1 if tx.confirmed else 0
                for out in tx.outputs:
                    if out.address == address and out.outpoint not in seen:
                        seen.add(out.outpoint)
                        found.append(out.outpoint)

            # confirmed history comes in pages of 25; mempool txs only on the first page
            if confirmed < 25:
                break
            path = f"/address/{address}/txs/chain/{rows[-1]['txid']}"
        else:
            logger.warning(
                "address %s: stopped after %d history pages, results may be partial",
                address, self._max_address_pages,
            )
        return found
