from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True, order=True)
class OutPoint:
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, text: str) -> "OutPoint":
        txid, sep, vout = text.strip().rpartition(":")
        if not sep or not txid or not vout.isdigit():
            raise ValueError(f"Invalid outpoint: {text!r}")
        return cls(txid=txid.lower(), vout=int(vout))


@dataclass(frozen=True)
class TxInput:
    previous_output: Optional[OutPoint]   # None = coinbase
    value: Optional[int] = None           # prevout value in sats, when reported
    address: Optional[str] = None
    sequence: int = 0xFFFFFFFF

    @property
    def is_coinbase(self) -> bool:
        return self.previous_output is None


@dataclass(frozen=True)
class TxOutput:
    outpoint: OutPoint
    value: int                  # satoshis
    script_pubkey: str = ""     # hex
    address: Optional[str] = None


@dataclass(frozen=True)
class Transaction:
    txid: str
    inputs: Tuple[TxInput, ...]
    outputs: Tuple[TxOutput, ...]
    block_height: Optional[int] = None
    confirmed: bool = False
    timestamp: Optional[int] = None

    @property
    def is_coinbase(self) -> bool:
        return len(self.inputs) == 1 and self.inputs[0].is_coinbase

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    @property
    def input_value(self) -> Optional[int]:
        # unknown unless every (non-coinbase) prevout value was reported
        if self.is_coinbase:
            return None
        total = 0
        for i in self.inputs:
            if i.value is None:
                return None
            total += i.value
        return total

    @property
    def fee(self) -> Optional[int]:
        inp = self.input_value
        return None if inp is None else inp - self.output_value

    def output(self, vout: int) -> Optional[TxOutput]:
        if 0 <= vout < len(self.outputs) and self.outputs[vout].outpoint.vout == vout:
            return self.outputs[vout]
        for o in self.outputs:
            if o.outpoint.vout == vout:
                return o
        return None

    def spends(self, outpoint: OutPoint) -> bool:
        return any(i.previous_output == outpoint for i in self.inputs)
