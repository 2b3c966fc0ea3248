from __future__ import annotations

import dataclasses
from typing import Any, Dict, Iterable, List, Optional, Tuple

from btctracer.core.dto import OutPoint
from btctracer.core.errors import DataIntegrityError, LedgerError
from btctracer.core.models import (
    BranchTotals,
    GraphCounters,
    NodeKey,
    NodeKind,
    NodeState,
    StopReason,
    TraceEdge,
    TraceNode,
    TraceResult,
)

_IDENTITY_FIELDS = ("key", "kind")
_STOP_REASONS = {r.value for r in StopReason}

# value buckets
_TRACED, _PRUNED, _STOPPED = 0, 1, 2


def _bucket(node: TraceNode) -> int:
    if node.state is not NodeState.PRUNED:
        return _TRACED
    return _STOPPED if node.reason in _STOP_REASONS else _PRUNED


class TraceGraph:
    """
    Accumulating result of one traversal: nodes, edges and running counters.

    add_node / add_edge are idempotent per key. Node identity is fixed by the
    first writer, other attributes follow the last writer. Counters are kept
    incrementally so limit checks never rescan the graph.

    Node values are bucketed as traced, pruned (by policy) or stopped (left
    unexpanded by a stop), both graph-wide and per parent. A value moves
    between buckets when its node changes state.
    """

    def __init__(self) -> None:
        self._nodes: Dict[NodeKey, TraceNode] = {}
        self._edges: Dict[Tuple[OutPoint, str], TraceEdge] = {}
        self._spent_by: Dict[OutPoint, str] = {}

        self._seed_count = 0
        self._pruned = 0
        self._failed = 0
        self._values = [0, 0, 0]

        # parent key -> [traced, pruned, stopped] value of its branches
        self._branches: Dict[NodeKey, List[int]] = {}

    # ---------- nodes ----------

    def add_node(self, key: NodeKey, kind: NodeKind, **attrs: Any) -> TraceNode:
        node = self._nodes.get(key)
        if node is None:
            state = attrs.pop("state", NodeState.PENDING)
            value = attrs.pop("value", None)
            node = TraceNode(key=key, kind=kind, **attrs)
            self._nodes[key] = node
            if node.is_seed:
                self._seed_count += 1
            self.set_state(key, state, attrs.get("reason"))
            if value is not None:
                self.set_value(key, value)
            return node

        state = attrs.pop("state", None)
        value = attrs.pop("value", None)
        if state is not None and state is not node.state:
            self.set_state(key, state, attrs.pop("reason", node.reason))
        for name, v in attrs.items():
            if name in _IDENTITY_FIELDS:
                continue
            setattr(node, name, v)
        if value is not None:
            self.set_value(key, value)
        return node

    def set_state(self, key: NodeKey, state: NodeState, reason: Optional[str] = None) -> TraceNode:
        node = self._require(key)
        before = _bucket(node)
        self._count_state(node.state, -1)
        node.state = state
        node.reason = reason
        self._count_state(state, +1)
        after = _bucket(node)
        if node.value is not None and after != before:
            self._tally(node, before, -node.value)
            self._tally(node, after, node.value)
        return node

    def set_value(self, key: NodeKey, value: int) -> TraceNode:
        node = self._require(key)
        if node.value is not None:
            # accounted already; value of an output never changes
            return node
        node.value = int(value)
        self._tally(node, _bucket(node), node.value)
        return node

    def get(self, key: NodeKey) -> Optional[TraceNode]:
        return self._nodes.get(key)

    def nodes(self) -> Iterable[TraceNode]:
        return self._nodes.values()

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    # ---------- edges ----------

    def add_edge(self, outpoint: OutPoint, txid: str, value: int) -> TraceEdge:
        if outpoint not in self._nodes or txid not in self._nodes:
            raise LedgerError(f"edge {outpoint} -> {txid}: endpoint not in graph")

        k = (outpoint, txid)
        existing = self._edges.get(k)
        if existing is not None:
            return existing

        if outpoint.txid != txid:
            first = self._spent_by.get(outpoint)
            if first is not None and first != txid:
                raise DataIntegrityError(
                    f"{outpoint} spent by both {first} and {txid}"
                )
            self._spent_by[outpoint] = txid

        edge = TraceEdge(outpoint=outpoint, txid=txid, value=int(value))
        self._edges[k] = edge
        return edge

    def edges(self) -> List[TraceEdge]:
        return list(self._edges.values())

    def spender_of(self, outpoint: OutPoint) -> Optional[str]:
        return self._spent_by.get(outpoint)

    # ---------- counters ----------

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def seed_count(self) -> int:
        return self._seed_count

    @property
    def non_seed_count(self) -> int:
        return len(self._nodes) - self._seed_count

    def branch_totals(self, parent: NodeKey) -> BranchTotals:
        return BranchTotals(*self._branches.get(parent, (0, 0, 0)))

    def counters(self) -> GraphCounters:
        traced, pruned, stopped = self._values
        return GraphCounters(
            node_count=len(self._nodes),
            edge_count=len(self._edges),
            pruned_count=self._pruned,
            failed_count=self._failed,
            traced_value=traced,
            pruned_value=pruned,
            stopped_value=stopped,
        )

    def snapshot(self, **meta: Any) -> TraceResult:
        """Copy of the graph wrapped in a TraceResult; meta fills the run fields."""
        return TraceResult(
            nodes={k: dataclasses.replace(n) for k, n in self._nodes.items()},
            edges=self.edges(),
            counters=self.counters(),
            branch_totals={k: self.branch_totals(k) for k in self._branches},
            **meta,
        )

    # ---------- internal ----------

    def _require(self, key: NodeKey) -> TraceNode:
        node = self._nodes.get(key)
        if node is None:
            raise LedgerError(f"{key}: not in graph")
        return node

    def _tally(self, node: TraceNode, bucket: int, amount: int) -> None:
        self._values[bucket] += amount
        if node.parent is not None:
            self._branches.setdefault(node.parent, [0, 0, 0])[bucket] += amount

    def _count_state(self, state: NodeState, delta: int) -> None:
        if state is NodeState.PRUNED:
            self._pruned += delta
        elif state is NodeState.FAILED:
            self._failed += delta
