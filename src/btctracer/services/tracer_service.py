from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from btctracer.core.dto import OutPoint, Transaction
from btctracer.core.errors import DataIntegrityError, LedgerError, PolicyViolation
from btctracer.core.graph import TraceGraph
from btctracer.core.ledger import ClaimResult, VisitLedger
from btctracer.core.models import (
    AddressKey,
    Direction,
    FailureReason,
    IntegrityViolation,
    NodeKey,
    NodeKind,
    NodeState,
    PruneReason,
    RunPhase,
    Seed,
    SeedKind,
    StopReason,
    TracePolicy,
    TraceResult,
    TraceStatus,
)
from btctracer.ports.chain_data_port import ChainDataPort
from btctracer.services.frontier import (
    Branch,
    EntryKind,
    FrontierEntry,
    FrontierScheduler,
    ProgressFn,
)

logger = logging.getLogger(__name__)

# prunes decided by policy carry no edge
_POLICY_REASONS = {r.value for r in (PruneReason.FANOUT_CAPPED, PruneReason.BELOW_DUST, PruneReason.DEPTH_LIMIT)}


class TracerService:
    """
    Builds an investigator-friendly UTXO value-flow graph from a seed.

    - Forward: follows outputs to the transactions that spent them
    - Backward: follows inputs to the transactions that funded them
    - Both: runs the two directions from the same seed into one graph

    Limits (depth, fan-out, dust, node cap, deadline) always end in an
    explicit Pruned node or truncation reason, never in silent loss. A
    failed fetch only fails its own node; check TraceResult.status.
    """

    def __init__(self, chain: ChainDataPort) -> None:
        self.chain = chain

    async def trace(
        self,
        seed: Seed,
        direction: Union[Direction, str] = Direction.FORWARD,
        policy: Optional[TracePolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> TraceResult:
        policy = policy or TracePolicy()
        try:
            direction = Direction(direction)
        except ValueError as e:
            raise PolicyViolation(f"Unknown direction: {direction!r}") from e
        policy.validate()
        seed.validate()

        run = _TraceRun(self.chain, seed, direction, policy, on_progress)
        return await run.execute(cancel_event)

    def trace_sync(
        self,
        seed: Seed,
        direction: Union[Direction, str] = Direction.FORWARD,
        policy: Optional[TracePolicy] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> TraceResult:
        return asyncio.run(self.trace(seed, direction, policy, on_progress=on_progress))


class _TraceRun:
    """One traversal: owns a fresh ledger, graph and frontier."""

    def __init__(
        self,
        chain: ChainDataPort,
        seed: Seed,
        direction: Direction,
        policy: TracePolicy,
        on_progress: Optional[ProgressFn],
    ) -> None:
        self.seed = seed
        self.direction = direction
        self.policy = policy
        self.phase = RunPhase.SEEDED

        self.ledger = VisitLedger()
        self.graph = TraceGraph()
        self.frontier = FrontierScheduler(chain, policy, self, on_progress=on_progress)
        self.violations: List[IntegrityViolation] = []

        self._progress = on_progress
        self._processed = 0
        # funding txid -> outpoints whose value is only known once it resolves
        self._awaiting_value: Dict[str, List[OutPoint]] = {}
        self._tx_memo: Dict[str, Transaction] = {}

    # -------------------------
    # Run lifecycle
    # -------------------------

    async def execute(self, cancel_event: Optional[asyncio.Event]) -> TraceResult:
        started_at = time.time()
        self._emit("start", {"seed": str(self.seed), "direction": self.direction.value})
        self._plant_seed()

        loop = asyncio.get_running_loop()
        deadline = None
        if self.policy.run_deadline is not None:
            deadline = loop.call_later(self.policy.run_deadline, self.frontier.stop, StopReason.DEADLINE)
        watcher = None
        if cancel_event is not None:
            if cancel_event.is_set():
                self.frontier.stop(StopReason.CANCELLED)
            else:
                watcher = asyncio.ensure_future(self._watch_cancel(cancel_event))

        self.phase = RunPhase.EXPANDING
        try:
            await self.frontier.run()
        finally:
            if deadline is not None:
                deadline.cancel()
            if watcher is not None:
                watcher.cancel()

        self.phase = RunPhase.DRAINING
        self._drain()

        self.phase = RunPhase.COMPLETED
        reasons = self.frontier.stop_reasons
        if StopReason.CANCELLED in reasons:
            status = TraceStatus.CANCELLED
        elif reasons:
            status = TraceStatus.TRUNCATED
        else:
            status = TraceStatus.COMPLETED

        result = self.graph.snapshot(
            seed=self.seed,
            direction=self.direction,
            policy=self.policy,
            status=status,
            truncation_reasons=reasons,
            violations=list(self.violations),
            fetches=self.frontier.stats.dispatched,
            retries=self.frontier.stats.retries,
            started_at=started_at,
            finished_at=time.time(),
        )
        self._emit("done", {
            "status": status.value,
            "nodes": result.counters.node_count,
            "edges": result.counters.edge_count,
        })
        return result

    async def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        self.frontier.stop(StopReason.CANCELLED)

    def _plant_seed(self) -> None:
        s = self.seed
        if s.kind is SeedKind.TXID:
            assert s.txid is not None
            self.ledger.try_claim(s.txid)
            self.graph.add_node(s.txid, NodeKind.TX, depth=0, direction=None, is_seed=True)
            self.frontier.push(FrontierEntry(EntryKind.TX, key=s.txid, target=s.txid, depth=0))

        elif s.kind is SeedKind.OUTPOINT:
            op = s.outpoint
            assert op is not None
            self.ledger.try_claim(op)
            self.graph.add_node(op, NodeKind.OUTPUT, depth=0, direction=None, is_seed=True)
            self.frontier.push(
                FrontierEntry(EntryKind.DESCRIBE, key=op, target=op.txid, depth=0, context=[op])
            )

        else:
            assert s.address is not None
            key = AddressKey(s.address)
            self.ledger.try_claim(key)
            self.graph.add_node(key, NodeKind.ADDRESS, depth=0, direction=None, is_seed=True,
                                address=s.address)
            self.frontier.push(FrontierEntry(EntryKind.ADDRESS, key=key, target=s.address, depth=0))

    def _drain(self) -> None:
        # nothing may stay Pending past the frontier
        leftovers = list(self.ledger.pending())
        if leftovers:
            if not self.frontier.stopped:
                raise LedgerError(f"{len(leftovers)} node(s) still pending after the frontier drained")
            reason = self.frontier.stop_reasons[0]
            for key in leftovers:
                self._finish(key, NodeState.PRUNED, reason.value)

        for node in self.graph.nodes():
            if node.kind is not NodeKind.TX or node.state is not NodeState.RESOLVED:
                continue
            if node.input_value is not None and node.output_value is not None \
                    and node.output_value > node.input_value:
                self._violation(
                    node.key,
                    "valueConservation",
                    f"outputs {node.output_value} exceed inputs {node.input_value}",
                )

    # -------------------------
    # Frontier callbacks
    # -------------------------

    def on_result(self, entry: FrontierEntry, result: Any) -> None:
        self._processed += 1
        if entry.kind is EntryKind.TX:
            self._on_tx(entry, result)
        elif entry.kind is EntryKind.DESCRIBE:
            self._on_describe(entry, result)
        elif entry.kind is EntryKind.SPEND:
            self._on_spend(entry, result)
        elif entry.kind is EntryKind.ADDRESS:
            self._on_address(entry, result)

        self._emit("visit", {
            "depth": entry.depth,
            "queue": self.frontier.outstanding,
            "processed": self._processed,
            "nodes": self.graph.node_count,
            "edges": self.graph.counters().edge_count,
        })

    def on_failure(self, entry: FrontierEntry, exc: BaseException, reason: FailureReason) -> None:
        if reason is FailureReason.DATA_INTEGRITY:
            self._violation(entry.key, "malformedData", str(exc))
        for key in self._owned_keys(entry):
            self._finish(key, NodeState.FAILED, reason.value, error=f"{exc.__class__.__name__}: {exc}")

    def on_skipped(self, entry: FrontierEntry, reason: StopReason) -> None:
        for key in self._owned_keys(entry):
            self._finish(key, NodeState.PRUNED, reason.value)

    def _owned_keys(self, entry: FrontierEntry) -> List[NodeKey]:
        keys = list(entry.context) if entry.kind is EntryKind.DESCRIBE else [entry.key]
        return [k for k in keys if self.ledger.status(k) is NodeState.PENDING]

    # ---------- result handlers ----------

    def _on_tx(self, entry: FrontierEntry, tx: Transaction) -> None:
        txid = str(entry.key)
        if not self._resolve_tx(txid, tx):
            return
        node = self.graph.get(txid)
        assert node is not None
        if node.is_seed:
            if self.direction.forward:
                self._expand_forward(txid, tx, node.depth)
            if self.direction.backward:
                self._expand_backward(txid, tx, node.depth)
        elif node.direction is Direction.FORWARD:
            self._expand_forward(txid, tx, node.depth)
        else:
            self._expand_backward(txid, tx, node.depth)

    def _on_describe(self, entry: FrontierEntry, tx: Transaction) -> None:
        for op in entry.context:
            if self.ledger.status(op) is not NodeState.PENDING:
                continue
            out = tx.output(op.vout)
            if tx.txid != op.txid or out is None:
                self._finish(op, NodeState.FAILED, FailureReason.NOT_FOUND.value,
                             error=f"output {op} does not exist")
                continue
            self.graph.add_node(op, NodeKind.OUTPUT, value=out.value, address=out.address)

            if self.direction.backward:
                self._attach_creator(op, tx)
            if self.direction.forward and self.frontier.can_descend(0):
                self.frontier.push(FrontierEntry(
                    EntryKind.SPEND, key=op, target=op, depth=0, direction=Direction.FORWARD,
                ))
            else:
                self._finish(op, NodeState.RESOLVED)

    def _on_spend(self, entry: FrontierEntry, spender: Optional[Transaction]) -> None:
        op = entry.key
        assert isinstance(op, OutPoint)
        if spender is None:
            self._finish(op, NodeState.RESOLVED, unspent=True)
            return

        if not spender.spends(op):
            self._violation(op, "spendMismatch", f"{spender.txid} reported as spender but has no such input")
            self._finish(op, NodeState.FAILED, FailureReason.DATA_INTEGRITY.value,
                         error=f"spender {spender.txid} does not spend {op}")
            return

        node = self.graph.get(op)
        value = node.value if node is not None and node.value is not None else 0
        claim = self._claim(spender.txid)
        if claim is None:
            self._finish(op, NodeState.PRUNED, StopReason.NODE_CAP.value)
            return

        if claim is ClaimResult.CLAIMED:
            self.graph.add_node(
                spender.txid, NodeKind.TX,
                depth=entry.depth + 1, direction=Direction.FORWARD, parent=op,
            )
        linked = self._link(op, spender.txid, value)
        self._finish(op, NodeState.RESOLVED, spent_by=spender.txid if linked else None, unspent=False)

        if claim is ClaimResult.CLAIMED:
            if self._resolve_tx(spender.txid, spender):
                self._expand_forward(spender.txid, spender, entry.depth + 1)

    def _on_address(self, entry: FrontierEntry, outpoints: Sequence[OutPoint]) -> None:
        key = entry.key
        by_txid: Dict[str, List[OutPoint]] = {}
        for op in outpoints:
            if self.ledger.try_claim(op) is not ClaimResult.CLAIMED:
                continue
            self.graph.add_node(op, NodeKind.OUTPUT, depth=0, direction=None, is_seed=True, parent=key)
            by_txid.setdefault(op.txid, []).append(op)

        self._finish(key, NodeState.RESOLVED)
        logger.info("address %s: %d output(s) in %d tx(s)", entry.target, len(outpoints), len(by_txid))

        for txid, ops in sorted(by_txid.items()):
            self.frontier.push(FrontierEntry(EntryKind.DESCRIBE, key=ops[0], target=txid, depth=0, context=ops))

    # -------------------------
    # Expansion
    # -------------------------

    def _expand_forward(self, txid: str, tx: Transaction, depth: int) -> None:
        branches = [
            Branch(key=o.outpoint, value=o.value, depth=depth, index=i)
            for i, o in enumerate(tx.outputs)
        ]
        for decision in self.frontier.select(branches):
            op = decision.branch.key
            assert isinstance(op, OutPoint)
            out = tx.output(op.vout)
            assert out is not None
            claim = self._claim(op)
            if claim is None:
                return
            if claim is ClaimResult.ALREADY_VISITED:
                continue

            if not decision.keep:
                assert decision.reason is not None
                self.graph.add_node(
                    op, NodeKind.OUTPUT, depth=depth, direction=Direction.FORWARD, parent=txid,
                    state=NodeState.PRUNED, reason=decision.reason.value,
                    value=out.value, address=out.address,
                )
                self.ledger.mark_resolved(op, NodeState.PRUNED, decision.reason.value)
                continue

            self.graph.add_node(
                op, NodeKind.OUTPUT, depth=depth, direction=Direction.FORWARD, parent=txid,
                value=out.value, address=out.address,
            )
            self._link(op, txid, out.value)
            if self.frontier.can_descend(depth):
                self.frontier.push(FrontierEntry(
                    EntryKind.SPEND, key=op, target=op, depth=depth, direction=Direction.FORWARD,
                ))
            else:
                # frontier boundary: traced, not expanded
                self._finish(op, NodeState.RESOLVED)

    def _expand_backward(self, txid: str, tx: Transaction, depth: int) -> None:
        # a funding tx at the depth boundary is a resolved leaf
        if tx.is_coinbase or not self.frontier.can_descend(depth):
            return
        branches = [
            Branch(key=i.previous_output, value=i.value, depth=depth + 1, index=n)
            for n, i in enumerate(tx.inputs)
            if i.previous_output is not None
        ]
        inputs = {i.previous_output: i for i in tx.inputs if i.previous_output is not None}

        for decision in self.frontier.select(branches):
            prev = decision.branch.key
            assert isinstance(prev, OutPoint)
            txin = inputs[prev]
            claim = self._claim(prev)
            if claim is None:
                return

            if claim is ClaimResult.ALREADY_VISITED:
                # another path reached this outpoint; record the spend fact only
                known = self.graph.get(prev)
                if known is not None and known.value is not None:
                    self._link(prev, txid, known.value)
                continue

            if not decision.keep:
                assert decision.reason is not None
                self.graph.add_node(
                    prev, NodeKind.OUTPUT, depth=depth + 1, direction=Direction.BACKWARD, parent=txid,
                    state=NodeState.PRUNED, reason=decision.reason.value,
                    value=txin.value, address=txin.address,
                )
                self.ledger.mark_resolved(prev, NodeState.PRUNED, decision.reason.value)
                continue

            self.graph.add_node(
                prev, NodeKind.OUTPUT, depth=depth + 1, direction=Direction.BACKWARD, parent=txid,
                value=txin.value, address=txin.address, spent_by=txid, unspent=False,
            )
            if txin.value is not None:
                self._link(prev, txid, txin.value)

            funding = prev.txid
            fclaim = self._claim(funding)
            if fclaim is None:
                self._finish(prev, NodeState.PRUNED, StopReason.NODE_CAP.value)
                return
            if fclaim is ClaimResult.CLAIMED:
                self.graph.add_node(
                    funding, NodeKind.TX, depth=depth + 1, direction=Direction.BACKWARD, parent=prev,
                )
                self.frontier.push(FrontierEntry(
                    EntryKind.TX, key=funding, target=funding, depth=depth + 1,
                    direction=Direction.BACKWARD,
                ))

            if txin.value is not None:
                self._link(prev, funding, txin.value)
            elif funding in self._tx_memo:
                self._fill_value(prev, self._tx_memo[funding])
            else:
                self._awaiting_value.setdefault(funding, []).append(prev)
            self._finish(prev, NodeState.RESOLVED)

    def _attach_creator(self, op: OutPoint, tx: Transaction) -> None:
        """Backward from a seed output: its creating tx becomes a depth-0 node."""
        claim = self._claim(tx.txid, seed=True)
        if claim is ClaimResult.CLAIMED:
            self.graph.add_node(tx.txid, NodeKind.TX, depth=0, direction=Direction.BACKWARD, parent=op)
        node = self.graph.get(op)
        if node is not None and node.value is not None:
            self._link(op, tx.txid, node.value)
        if claim is ClaimResult.CLAIMED and self._resolve_tx(tx.txid, tx):
            self._expand_backward(tx.txid, tx, 0)

    # -------------------------
    # Helpers
    # -------------------------

    def _claim(self, key: NodeKey, seed: bool = False) -> Optional[ClaimResult]:
        """
        Claim a node for this run. None means the node cap refused a new node
        (and stopped the frontier); existing nodes are never refused.
        """
        if key in self.ledger:
            return ClaimResult.ALREADY_VISITED
        if not seed and self.graph.non_seed_count >= self.policy.max_nodes:
            self.frontier.stop(StopReason.NODE_CAP)
            return None
        return self.ledger.try_claim(key)

    def _resolve_tx(self, txid: str, tx: Transaction) -> bool:
        if tx.txid != txid:
            self._violation(txid, "malformedData", f"source returned {tx.txid} for {txid}")
            self._finish(txid, NodeState.FAILED, FailureReason.DATA_INTEGRITY.value,
                         error="transaction id mismatch")
            return False

        self._tx_memo[txid] = tx
        self._finish(
            txid, NodeState.RESOLVED,
            block_height=tx.block_height,
            input_value=tx.input_value,
            output_value=tx.output_value,
            fee=tx.fee,
        )
        for prev in self._awaiting_value.pop(txid, []):
            self._fill_value(prev, tx)
        return True

    def _fill_value(self, prev: OutPoint, funding: Transaction) -> None:
        out = funding.output(prev.vout)
        node = self.graph.get(prev)
        if out is None or node is None:
            self._violation(prev, "malformedData", f"{funding.txid} has no output {prev.vout}")
            return
        self.graph.set_value(prev, out.value)
        if node.address is None:
            node.address = out.address
        if node.spent_by is not None:
            self._link(prev, node.spent_by, out.value)
        self._link(prev, funding.txid, out.value)

    def _link(self, outpoint: OutPoint, txid: str, value: int) -> bool:
        for key in (outpoint, txid):
            node = self.graph.get(key)
            if node is not None and node.state is NodeState.PRUNED and node.reason in _POLICY_REASONS:
                return False
        try:
            self.graph.add_edge(outpoint, txid, value)
        except DataIntegrityError as e:
            # first-seen spend wins
            self._violation(outpoint, "doubleSpend", str(e))
            return False
        return True

    def _finish(self, key: NodeKey, state: NodeState, reason: Optional[str] = None, **attrs: Any) -> None:
        self.ledger.mark_resolved(key, state, reason)
        node = self.graph.get(key)
        assert node is not None
        self.graph.add_node(key, node.kind, state=state, reason=reason, **attrs)

    def _violation(self, key: NodeKey, kind: str, detail: str) -> None:
        logger.warning("data integrity violation at %s (%s): %s", key, kind, detail)
        self.violations.append(IntegrityViolation(key=key, kind=kind, detail=detail))

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._progress is not None:
            self._progress(event, data)
