from __future__ import annotations

import asyncio
import json
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from btctracer.core.dto import OutPoint, Transaction, TxInput, TxOutput
from btctracer.core.errors import DataIntegrityError, NotFoundError
from btctracer.ports.chain_data_port import ChainDataPort


class StaticChainAdapter(ChainDataPort):
    """
    In-memory chain for tests and offline fixtures.

    failures maps a target (txid or "txid:vout") to exceptions raised by its
    next calls, in order, before the real answer is returned. spenders
    overrides the spend index. delay makes every call sleep first.
    """

    def __init__(
        self,
        transactions: Optional[Iterable[Transaction]] = None,
        spenders: Optional[Dict[OutPoint, str]] = None,
        failures: Optional[Dict[str, List[Exception]]] = None,
        delay: float = 0.0,
    ):
        self._txs: Dict[str, Transaction] = {}
        self._spent_by: Dict[OutPoint, str] = {}
        self._by_address: Dict[str, List[OutPoint]] = {}
        for tx in transactions or []:
            self.add(tx)
        self._spent_by.update(spenders or {})
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self._delay = delay

        self.calls: Counter = Counter()
        self.targets: Counter = Counter()

    def add(self, tx: Transaction) -> None:
        self._txs[tx.txid] = tx
        for i in tx.inputs:
            if i.previous_output is not None:
                self._spent_by.setdefault(i.previous_output, tx.txid)
        for o in tx.outputs:
            if o.address:
                self._by_address.setdefault(o.address, []).append(o.outpoint)

    async def _enter(self, method: str, target: str) -> None:
        self.calls[method] += 1
        self.targets[target] += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        pending = self._failures.get(target)
        if pending:
            raise pending.pop(0)

    # ---------- port methods ----------

    async def get_transaction(self, txid: str) -> Transaction:
        await self._enter("get_transaction", txid)
        tx = self._txs.get(txid)
        if tx is None:
            raise NotFoundError(f"unknown transaction {txid}")
        return tx

    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        await self._enter("get_spending_transaction", str(outpoint))
        creator = self._txs.get(outpoint.txid)
        if creator is None or creator.output(outpoint.vout) is None:
            raise NotFoundError(f"unknown output {outpoint}")
        spender = self._spent_by.get(outpoint)
        if spender is None:
            return None
        tx = self._txs.get(spender)
        if tx is None:
            raise DataIntegrityError(f"{outpoint} spent by unknown transaction {spender}")
        return tx

    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        await self._enter("get_outputs_for_address", address)
        return list(self._by_address.get(address, []))

    # ---------- fixtures ----------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StaticChainAdapter":
        """
        {"transactions": [{"txid": ..., "block_height": 1,
                           "inputs": [{"txid": ..., "vout": 0, "value": 5000}, {"coinbase": true}],
                           "outputs": [{"value": 3000, "address": "bc1..."}]}]}
        """
        txs = []
        for row in data.get("transactions") or []:
            txid = str(row["txid"]).lower()
            inputs = []
            for i in row.get("inputs") or []:
                if i.get("coinbase"):
                    inputs.append(TxInput(previous_output=None))
                    continue
                inputs.append(TxInput(
                    previous_output=OutPoint(str(i["txid"]).lower(), int(i["vout"])),
                    value=i.get("value"),
                    address=i.get("address"),
                ))
            outputs = [
                TxOutput(outpoint=OutPoint(txid, n), value=int(o["value"]), address=o.get("address"))
                for n, o in enumerate(row.get("outputs") or [])
            ]
            height = row.get("block_height")
            txs.append(Transaction(
                txid=txid,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                block_height=height,
                confirmed=height is not None,
            ))
        return cls(transactions=txs)

    @classmethod
    def from_json(cls, path: str) -> "StaticChainAdapter":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
