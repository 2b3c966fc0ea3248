from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional

from btctracer.core.errors import LedgerError
from btctracer.core.models import NodeKey, NodeState


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_VISITED = "alreadyVisited"


@dataclass
class _Slot:
    state: NodeState = NodeState.PENDING
    outcome: Optional[str] = None


class VisitLedger:
    """
    Deduplication store for one traversal.

    try_claim() is the single serialization point: the slot is inserted with
    dict.setdefault, so two claims for the same identity can never both win.
    Slots are never evicted; a ledger lives exactly as long as its run.
    """

    def __init__(self) -> None:
        self._slots: Dict[NodeKey, _Slot] = {}

    def try_claim(self, key: NodeKey) -> ClaimResult:
        fresh = _Slot()
        if self._slots.setdefault(key, fresh) is fresh:
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY_VISITED

    def mark_resolved(self, key: NodeKey, state: NodeState, outcome: Optional[str] = None) -> None:
        if not state.terminal:
            raise LedgerError(f"{key}: cannot resolve into {state.value}")
        slot = self._slots.get(key)
        if slot is None:
            raise LedgerError(f"{key}: resolved without being claimed")
        if slot.state.terminal:
            raise LedgerError(f"{key}: already {slot.state.value}, cannot become {state.value}")
        slot.state = state
        slot.outcome = outcome

    def status(self, key: NodeKey) -> Optional[NodeState]:
        slot = self._slots.get(key)
        return slot.state if slot is not None else None

    def outcome(self, key: NodeKey) -> Optional[str]:
        slot = self._slots.get(key)
        return slot.outcome if slot is not None else None

    def pending(self) -> Iterator[NodeKey]:
        return (k for k, s in list(self._slots.items()) if s.state is NodeState.PENDING)

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)
