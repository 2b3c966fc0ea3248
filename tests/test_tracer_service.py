import asyncio
import unittest
from typing import Any, List, Optional

from btctracer.adapters.chain.static_chain_adapter import StaticChainAdapter
from btctracer.core.dto import OutPoint, Transaction
from btctracer.core.errors import PolicyViolation, RateLimitError, SourceUnavailableError
from btctracer.core.models import (
    AddressKey,
    Direction,
    NodeState,
    Seed,
    StopReason,
    TracePolicy,
    TraceStatus,
)
from btctracer.ports.chain_data_port import ChainDataPort
from btctracer.services.tracer_service import TracerService

from chain_builders import ADDR, OTHER_ADDR, T0, T1, T2, T3, T4, T5, T9, make_tx, op


def _policy(**overrides) -> TracePolicy:
    defaults = dict(
        max_depth=3,
        max_outputs=25,
        dust_threshold=546,
        max_nodes=1000,
        concurrency=1,
        max_retries=2,
        backoff_initial=0.0,
        backoff_jitter=0.0,
        fetch_timeout=5.0,
        cancel_grace=1.0,
    )
    defaults.update(overrides)
    return TracePolicy(**defaults)


def _simple_chain(**kwargs) -> StaticChainAdapter:
    # T1:0 (5000) -> T2 -> T2:0 (3000), T2:1 (2000)
    return StaticChainAdapter(
        transactions=[
            make_tx(T1, [(op(T0), 5000)], [5000]),
            make_tx(T2, [(op(T1), 5000)], [3000, 2000]),
        ],
        **kwargs,
    )


def _linear_chain(**kwargs) -> StaticChainAdapter:
    # T1 -> T2 -> T3 -> T4 -> T5, each spending output 0 of the previous
    return StaticChainAdapter(
        transactions=[
            make_tx(T1, [], [5000]),
            make_tx(T2, [(op(T1), 5000)], [4900]),
            make_tx(T3, [(op(T2), 4900)], [4800]),
            make_tx(T4, [(op(T3), 4800)], [4700]),
            make_tx(T5, [(op(T4), 4700)], [4600]),
        ],
        **kwargs,
    )


class _StalledChain(ChainDataPort):
    """Every call blocks until it is cancelled."""

    def __init__(self) -> None:
        self.calls = 0
        self.entered = asyncio.Event()

    async def _stall(self) -> Any:
        self.calls += 1
        self.entered.set()
        await asyncio.Event().wait()

    async def get_transaction(self, txid: str) -> Transaction:
        return await self._stall()

    async def get_spending_transaction(self, outpoint: OutPoint) -> Optional[Transaction]:
        return await self._stall()

    async def get_outputs_for_address(self, address: str) -> List[OutPoint]:
        return await self._stall()


def _edge_keys(result):
    return {(str(e.outpoint), e.txid) for e in result.edges}


class TracerServiceTests(unittest.IsolatedAsyncioTestCase):
    async def test_outpoint_seed_follows_spend_one_hop(self) -> None:
        chain = _simple_chain()
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=1))

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        self.assertEqual(set(result.nodes), {op(T1), T2, op(T2, 0), op(T2, 1)})
        self.assertEqual(
            _edge_keys(result),
            {(f"{T1}:0", T2), (f"{T2}:0", T2), (f"{T2}:1", T2)},
        )
        seed = result.nodes[op(T1)]
        self.assertTrue(seed.is_seed)
        self.assertEqual(seed.spent_by, T2)
        self.assertEqual(seed.value, 5000)
        self.assertEqual(result.nodes[T2].depth, 1)
        self.assertEqual(result.nodes[T2].fee, 0)
        self.assertTrue(all(n.state is NodeState.RESOLVED for n in result.nodes.values()))
        self.assertEqual(chain.calls["get_transaction"], 1)

    async def test_fanout_cap_keeps_highest_value_branch(self) -> None:
        svc = TracerService(_simple_chain())

        result = await svc.trace(
            Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=1, max_outputs=1)
        )

        capped = result.nodes[op(T2, 1)]
        self.assertEqual(capped.state, NodeState.PRUNED)
        self.assertEqual(capped.reason, "fanoutCapped")
        self.assertEqual(capped.parent, T2)
        self.assertNotIn((f"{T2}:1", T2), _edge_keys(result))
        self.assertIn((f"{T2}:0", T2), _edge_keys(result))
        self.assertEqual(result.counters.pruned_value, 2000)
        self.assertEqual(result.status, TraceStatus.COMPLETED)

        # traced + pruned branch values account for the parent's total output
        children = [n for n in result.nodes.values() if n.parent == T2]
        traced = sum(n.value for n in children if n.state is not NodeState.PRUNED)
        pruned = sum(n.value for n in children if n.state is NodeState.PRUNED)
        self.assertEqual((traced, pruned), (3000, 2000))
        self.assertEqual(traced + pruned, result.nodes[T2].output_value)

    async def test_failed_fetch_marks_only_that_branch(self) -> None:
        chain = StaticChainAdapter(
            transactions=[make_tx(T3, [(op(T2), 3000)], [2500])],
            failures={T2: [SourceUnavailableError("down")] * 10},
        )
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T3), "backward", _policy(max_depth=2))

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        failed = result.nodes[T2]
        self.assertEqual(failed.state, NodeState.FAILED)
        self.assertEqual(failed.reason, "sourceUnavailable")
        self.assertEqual(len(result.failures), 1)
        self.assertEqual(chain.targets[T2], 3)
        self.assertEqual(result.retries, 2)
        self.assertEqual(result.nodes[op(T2)].state, NodeState.RESOLVED)
        self.assertIn((f"{T2}:0", T3), _edge_keys(result))

    async def test_node_cap_truncates_and_prunes_pending(self) -> None:
        chain = StaticChainAdapter(transactions=[make_tx(T1, [], [4000, 3000])])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(max_nodes=1))

        self.assertEqual(result.status, TraceStatus.TRUNCATED)
        self.assertEqual(result.truncation_reasons, [StopReason.NODE_CAP])
        non_seed = [n for n in result.nodes.values() if not n.is_seed]
        self.assertEqual(len(non_seed), 1)
        self.assertEqual(non_seed[0].state, NodeState.PRUNED)
        self.assertEqual(non_seed[0].reason, "nodeCapReached")
        self.assertEqual(chain.calls["get_spending_transaction"], 0)
        self.assertFalse(any(n.state is NodeState.PENDING for n in result.nodes.values()))
        # the unexpanded output is reported as stopped, not traced
        self.assertEqual(result.counters.traced_value, 0)
        self.assertEqual(result.counters.stopped_value, 4000)
        self.assertEqual(result.counters.pruned_value, 0)

    async def test_converging_paths_expand_once(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T1, [], [3000, 3000]),
            make_tx(T2, [(op(T1, 0), 3000), (op(T1, 1), 3000)], [5500]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(max_depth=2, concurrency=4))

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        self.assertEqual(len(result.nodes), 5)
        self.assertIn((f"{T1}:0", T2), _edge_keys(result))
        self.assertIn((f"{T1}:1", T2), _edge_keys(result))
        self.assertEqual(chain.targets[f"{T2}:0"], 1)
        self.assertEqual(chain.calls["get_transaction"], 1)
        self.assertTrue(result.nodes[op(T2)].unspent)

    async def test_depth_limit_bounds_reachable_nodes(self) -> None:
        chain = _linear_chain()
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=2))

        self.assertTrue(all(n.depth <= 2 for n in result.nodes.values()))
        self.assertIn(T3, result.nodes)
        self.assertNotIn(T4, result.nodes)
        self.assertEqual(result.nodes[op(T3)].state, NodeState.RESOLVED)
        self.assertIsNone(result.nodes[op(T3)].unspent)
        self.assertEqual(chain.calls["get_spending_transaction"], 2)

    async def test_dust_output_is_pruned_without_edge(self) -> None:
        chain = StaticChainAdapter(transactions=[make_tx(T1, [], [300, 5000])])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(max_depth=1))

        dust = result.nodes[op(T1, 0)]
        self.assertEqual(dust.state, NodeState.PRUNED)
        self.assertEqual(dust.reason, "belowDustThreshold")
        self.assertNotIn((f"{T1}:0", T1), _edge_keys(result))
        self.assertTrue(result.nodes[op(T1, 1)].unspent)
        self.assertEqual(chain.targets[f"{T1}:0"], 0)

    async def test_backward_from_txid_reaches_funding_tx(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T0, [], [5000]),
            make_tx(T1, [(op(T0), 5000)], [4800]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.BACKWARD, _policy(max_depth=1))

        self.assertEqual(set(result.nodes), {T1, op(T0), T0})
        self.assertEqual(_edge_keys(result), {(f"{T0}:0", T1), (f"{T0}:0", T0)})
        self.assertEqual(result.nodes[T0].direction, Direction.BACKWARD)
        self.assertEqual(result.nodes[T1].fee, 200)
        self.assertEqual(chain.calls["get_spending_transaction"], 0)

    async def test_backward_depth_limit_leaves_boundary_tx_unexpanded(self) -> None:
        chain = _linear_chain()
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T3), Direction.BACKWARD, _policy(max_depth=1))

        self.assertTrue(all(n.depth <= 1 for n in result.nodes.values()))
        self.assertEqual(set(result.nodes), {T3, op(T2), T2})
        self.assertEqual(result.nodes[T2].state, NodeState.RESOLVED)
        self.assertEqual(result.counters.pruned_count, 0)
        self.assertEqual(result.counters.pruned_value, 0)
        self.assertEqual(chain.targets[T1], 0)
        self.assertEqual(result.status, TraceStatus.COMPLETED)

    async def test_backward_from_outpoint_includes_creating_tx(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T0, [], [5000]),
            make_tx(T1, [(op(T0), 5000)], [4800]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_outpoint(op(T1)), Direction.BACKWARD, _policy(max_depth=1))

        self.assertEqual(set(result.nodes), {op(T1), T1, op(T0), T0})
        self.assertIn((f"{T1}:0", T1), _edge_keys(result))
        self.assertEqual(result.nodes[T1].parent, op(T1))
        self.assertEqual(chain.targets[T1], 1)

    async def test_unknown_input_value_filled_from_funding_tx(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T0, [], [5000]),
            make_tx(T1, [(op(T0), None)], [4800]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.BACKWARD, _policy(max_depth=1))

        self.assertEqual(result.nodes[op(T0)].value, 5000)
        self.assertEqual(_edge_keys(result), {(f"{T0}:0", T1), (f"{T0}:0", T0)})
        self.assertTrue(all(e.value == 5000 for e in result.edges))
        self.assertEqual(result.violations, [])

    async def test_both_directions_share_one_graph(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T0, [], [5000]),
            make_tx(T1, [(op(T0), 5000)], [4800]),
            make_tx(T2, [(op(T1), 4800)], [4700]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.BOTH, _policy(max_depth=1))

        self.assertEqual(set(result.nodes), {T1, op(T1), T2, op(T2), op(T0), T0})
        self.assertEqual(result.nodes[T2].direction, Direction.FORWARD)
        self.assertEqual(result.nodes[T0].direction, Direction.BACKWARD)
        self.assertEqual(result.status, TraceStatus.COMPLETED)

    async def test_address_seed_groups_outputs_by_transaction(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T1, [], [(4000, ADDR), (1000, OTHER_ADDR)]),
            make_tx(T2, [], [(2000, ADDR)]),
            make_tx(T3, [], [(1500, ADDR), (2500, ADDR)]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_address(ADDR), Direction.FORWARD, _policy(max_depth=0))

        self.assertEqual(
            set(result.nodes),
            {AddressKey(ADDR), op(T1), op(T2), op(T3, 0), op(T3, 1)},
        )
        self.assertTrue(all(n.is_seed for n in result.nodes.values()))
        self.assertEqual(result.nodes[op(T3, 1)].value, 2500)
        self.assertEqual(result.nodes[op(T1)].parent, AddressKey(ADDR))
        self.assertEqual(chain.calls["get_transaction"], 3)
        self.assertEqual(chain.targets[T3], 1)

    async def test_repeated_runs_are_independent(self) -> None:
        svc = TracerService(_simple_chain())
        seed = Seed.from_outpoint(op(T1))

        first = await svc.trace(seed, Direction.FORWARD, _policy(max_depth=1))
        second = await svc.trace(seed, Direction.FORWARD, _policy(max_depth=1))

        self.assertEqual(set(first.nodes), set(second.nodes))
        self.assertEqual(_edge_keys(first), _edge_keys(second))
        self.assertEqual(first.counters, second.counters)

    async def test_outputs_exceeding_inputs_is_reported(self) -> None:
        chain = StaticChainAdapter(transactions=[make_tx(T1, [(op(T0), 1000)], [5000])])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(max_depth=0))

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        self.assertEqual([v.kind for v in result.violations], ["valueConservation"])
        self.assertEqual(result.violations[0].key, T1)

    async def test_conflicting_spenders_keep_first_record(self) -> None:
        chain = StaticChainAdapter(transactions=[
            make_tx(T0, [], [5000]),
            make_tx(T2, [(op(T0), 5000)], [4000]),
            make_tx(T3, [(op(T0), 5000)], [4000]),
            make_tx(T4, [(op(T2), 4000), (op(T3), 4000)], [7000]),
        ])
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T4), Direction.BACKWARD, _policy(max_depth=3))

        self.assertEqual([v.kind for v in result.violations], ["doubleSpend"])
        spends = [e for e in result.edges if e.outpoint == op(T0) and not e.is_creation]
        self.assertEqual(len(spends), 1)
        self.assertEqual(result.nodes[op(T0)].spent_by, spends[0].txid)

    async def test_spender_not_spending_output_fails_node(self) -> None:
        chain = _simple_chain(spenders={op(T1): T9})
        chain.add(make_tx(T9, [(op(T5), 100)], [90]))
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=1))

        node = result.nodes[op(T1)]
        self.assertEqual(node.state, NodeState.FAILED)
        self.assertEqual(node.reason, "dataIntegrity")
        self.assertEqual([v.kind for v in result.violations], ["spendMismatch"])
        self.assertNotIn(T9, result.nodes)

    async def test_rate_limited_fetch_retries_then_succeeds(self) -> None:
        chain = StaticChainAdapter(
            transactions=[make_tx(T1, [], [5000])],
            failures={T1: [RateLimitError("slow down")]},
        )
        events = []
        svc = TracerService(chain)

        result = await svc.trace(
            Seed.from_txid(T1), Direction.FORWARD, _policy(max_depth=0),
            on_progress=lambda event, data: events.append(event),
        )

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        self.assertEqual(result.nodes[T1].state, NodeState.RESOLVED)
        self.assertEqual(result.retries, 1)
        self.assertEqual(chain.targets[T1], 2)
        self.assertEqual(events[0], "start")
        self.assertIn("retry", events)
        self.assertEqual(events[-1], "done")

    async def test_missing_transaction_fails_seed(self) -> None:
        svc = TracerService(StaticChainAdapter())

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy())

        self.assertEqual(result.nodes[T1].state, NodeState.FAILED)
        self.assertEqual(result.nodes[T1].reason, "notFound")
        self.assertEqual(result.status, TraceStatus.COMPLETED)

    async def test_invalid_requests_raise_policy_violation(self) -> None:
        svc = TracerService(_simple_chain())

        with self.assertRaises(PolicyViolation):
            await svc.trace(Seed.from_txid("nothex"), Direction.FORWARD, _policy())
        with self.assertRaises(PolicyViolation):
            await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(max_outputs=0))
        with self.assertRaises(PolicyViolation):
            await svc.trace(Seed.from_txid(T1), "sideways", _policy())

    async def test_cancel_before_start_prunes_seed(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        chain = _linear_chain()
        svc = TracerService(chain)

        result = await svc.trace(Seed.from_txid(T1), Direction.FORWARD, _policy(), cancel_event=cancel)

        self.assertEqual(result.status, TraceStatus.CANCELLED)
        self.assertEqual(result.nodes[T1].state, NodeState.PRUNED)
        self.assertEqual(result.nodes[T1].reason, "cancelled")
        self.assertEqual(chain.calls["get_transaction"], 0)

    async def test_cancel_mid_run_leaves_no_pending_nodes(self) -> None:
        cancel = asyncio.Event()
        svc = TracerService(_linear_chain(delay=0.05))

        task = asyncio.ensure_future(svc.trace(
            Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=10), cancel_event=cancel,
        ))
        await asyncio.sleep(0.08)
        cancel.set()
        result = await task

        self.assertEqual(result.status, TraceStatus.CANCELLED)
        self.assertIn(StopReason.CANCELLED, result.truncation_reasons)
        self.assertFalse(any(n.state is NodeState.PENDING for n in result.nodes.values()))
        self.assertNotIn(T5, result.nodes)

    async def test_deadline_truncates_run(self) -> None:
        svc = TracerService(_linear_chain(delay=0.05))

        result = await svc.trace(
            Seed.from_outpoint(op(T1)), Direction.FORWARD, _policy(max_depth=10, run_deadline=0.12),
        )

        self.assertEqual(result.status, TraceStatus.TRUNCATED)
        self.assertEqual(result.truncation_reasons, [StopReason.DEADLINE])
        self.assertFalse(any(n.state is NodeState.PENDING for n in result.nodes.values()))
        self.assertTrue(any(n.reason == "deadlineExceeded" for n in result.pruned))

    async def test_fetch_timeout_retries_then_fails_branch(self) -> None:
        chain = _StalledChain()
        svc = TracerService(chain)

        result = await svc.trace(
            Seed.from_txid(T1), Direction.FORWARD, _policy(fetch_timeout=0.05, max_retries=1),
        )

        node = result.nodes[T1]
        self.assertEqual(node.state, NodeState.FAILED)
        self.assertEqual(node.reason, "sourceUnavailable")
        self.assertEqual(result.retries, 1)
        self.assertEqual(chain.calls, 2)
        self.assertEqual(result.status, TraceStatus.COMPLETED)

    async def test_cancel_abandons_fetch_stuck_past_grace(self) -> None:
        cancel = asyncio.Event()
        chain = _StalledChain()
        svc = TracerService(chain)

        task = asyncio.ensure_future(svc.trace(
            Seed.from_txid(T1), Direction.FORWARD, _policy(cancel_grace=0.05), cancel_event=cancel,
        ))
        await asyncio.wait_for(chain.entered.wait(), timeout=1.0)
        cancel.set()
        result = await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(result.status, TraceStatus.CANCELLED)
        self.assertEqual(result.nodes[T1].state, NodeState.PRUNED)
        self.assertEqual(result.nodes[T1].reason, "cancelled")
        self.assertFalse(any(n.state is NodeState.PENDING for n in result.nodes.values()))
        self.assertEqual(chain.calls, 1)


class TraceSyncTests(unittest.TestCase):
    def test_trace_sync_runs_event_loop(self) -> None:
        svc = TracerService(_simple_chain())

        result = svc.trace_sync(Seed.parse(f"{T1}:0"), "forward", _policy(max_depth=1))

        self.assertEqual(result.status, TraceStatus.COMPLETED)
        self.assertEqual(len(result.edges), 3)


if __name__ == "__main__":
    unittest.main()
