from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from btctracer.config.settings import (
    BITCOIN_RPC_PASSWORD,
    BITCOIN_RPC_TIMEOUT_SEC,
    BITCOIN_RPC_URL,
    BITCOIN_RPC_USER,
)

from btctracer.core.dto import OutPoint, Transaction, TxInput, TxOutput
from btctracer.core.errors import (
    DataIntegrityError,
    InvalidQueryError,
    NotFoundError,
    SourceUnavailableError,
    UnsupportedQueryError,
)
from btctracer.ports.chain_data_port import ChainDataPort

logger = logging.getLogger(__name__)

# Bitcoin Core RPC error codes
_NOT_FOUND_CODES = (-5, -20)        # RPC_INVALID_ADDRESS_OR_KEY, RPC_DATABASE_ERROR
_INVALID_CODES = (-8, -22)          # RPC_INVALID_PARAMETER, RPC_DESERIALIZATION_ERROR
_WARMUP_CODE = -28                  # RPC_IN_WARMUP

_SATS_PER_BTC = Decimal(100_000_000)


def btc_to_sats(amount: Any) -> int:
    return int((Decimal(str(amount)) * _SATS_PER_BTC).to_integral_value())


class BitcoinRpcChainAdapter(ChainDataPort):
    """
    Bitcoin Core JSON-RPC.

    Needs txindex=1 for arbitrary transaction lookups. Core keeps no spent
    index, so spend lookups only answer for unspent outputs (gettxout); a
    spent output raises UnsupportedQueryError.
    """

    def __init__(
        self,
        url: str = BITCOIN_RPC_URL,
        user: Optional[str] = BITCOIN_RPC_USER,
        password: Optional[str] = BITCOIN_RPC_PASSWORD,
        timeout: float = BITCOIN_RPC_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._ids = itertools.count(1)
        auth = httpx.BasicAuth(user, password or "") if user else None
        self._client = client or httpx.AsyncClient(auth=auth, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    # ---------- internal ----------

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"RPC {method} failed: {e}") from e

        # Core answers RPC errors with HTTP 404/500 and a JSON body
        try:
            data = resp.json()
        except ValueError as e:
            if resp.status_code in (401, 403):
                raise SourceUnavailableError(f"RPC {method}: authentication failed") from e
            raise SourceUnavailableError(f"RPC {method}: HTTP {resp.status_code}") from e

        err = data.get("error") if isinstance(data, dict) else None
        if err:
            code = int(err.get("code", 0))
            message = str(err.get("message", ""))
            if code in _NOT_FOUND_CODES:
                raise NotFoundError(f"RPC {method}: {message}")
            if code in _INVALID_CODES:
                raise InvalidQueryError(f"RPC {method}: {message}")
            if code == _WARMUP_CODE:
                raise SourceUnavailableError(f"RPC {method}: node warming up ({message})")
            raise SourceUnavailableError(f"RPC {method} error {code}: {message}")

        if resp.status_code >= 400:
            raise SourceUnavailableError(f"RPC {method}: HTTP {resp.status_code}")
        if not isinstance(data, dict) or "result" not in data:
            raise DataIntegrityError(f"RPC {method}: malformed response")
        return data["result"]

    @staticmethod
    def _parse_tx(data: Dict[str, Any]) -> Transaction:
        try:
            txid = str(data["txid"]).lower()
            inputs = []
            for vin in data.get("vin") or []:
                seq = int(vin.get("sequence", 0xFFFFFFFF))
                if "coinbase" in vin:
                    inputs.append(TxInput(previous_output=None, sequence=seq))
                    continue
                prevout = vin.get("prevout") or {}
                value = prevout.get("value")
                inputs.append(TxInput(
                    previous_output=OutPoint(str(vin["txid"]).lower(), int(vin["vout"])),
                    value=btc_to_sats(value) if value is not None else None,
                    address=(prevout.get("scriptPubKey") or {}).get("address"),
                    sequence=seq,
                ))
            outputs = []
            for vout in data.get("vout") or []:
                spk = vout.get("scriptPubKey") or {}
                n = int(vout["n"])
                outputs.append(TxOutput(
                    outpoint=OutPoint(txid, n),
                    value=btc_to_sats(vout["value"]),
                    script_pubkey=spk.get("hex", ""),
                    address=spk.get("address"),
                ))
            confirmations = int(data.get("confirmations") or 0)
            return Transaction(
                txid=txid,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                confirmed=confirmations > 0,
                timestamp=data.get("blocktime"),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise DataIntegrityError(f"Malformed RPC transaction: {e}") from e

    # ---------- port methods ----------

    async def get_transaction(self, txid: str) -> Transaction:
        data = await self._call("getrawtransaction", [txid, 2])
        if not isinstance(data, dict):
            raise DataIntegrityError(f"getrawtransaction {txid}: expected an object")
        tx = self._parse_tx(data)
        if tx.txid != txid.lower():
            raise DataIntegrityError(f"RPC returned {tx.txid} for {txid}")
        return tx

    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        utxo = await self._call("gettxout", [outpoint.txid, outpoint.vout, True])
        if utxo is not None:
            return None
        raise UnsupportedQueryError(
            f"{outpoint} is spent or unknown; Bitcoin Core has no spent-output index"
        )

    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        # current UTXO set only
        result = await self._call("scantxoutset", ["start", [f"addr({address})"]])
        if not isinstance(result, dict):
            raise DataIntegrityError("scantxoutset: expected an object")
        try:
            ops = [OutPoint(str(u["txid"]).lower(), int(u["vout"])) for u in result.get("unspents") or []]
        except (KeyError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"scantxoutset: malformed unspents: {e}") from e
        logger.debug("scantxoutset %s: %d unspent output(s)", address, len(ops))
        return sorted(ops)
