from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from btctracer.core.models import TraceNode, TraceResult

_SATS_PER_BTC = Decimal(100_000_000)


def sats_to_btc(sats: Optional[int]) -> Optional[str]:
    # keep as string for JSON precision safety
    if sats is None:
        return None
    return format(Decimal(sats) / _SATS_PER_BTC, ".8f")


def _node_to_dict(n: TraceNode) -> Dict[str, Any]:
    return {
        "id": str(n.key),
        "kind": n.kind.value,
        "depth": n.depth,
        "direction": n.direction.value if n.direction is not None else None,
        "state": n.state.value,
        "reason": n.reason,
        "parent": str(n.parent) if n.parent is not None else None,
        "is_seed": n.is_seed,
        "value": n.value,
        "address": n.address,
        "spent_by": n.spent_by,
        "unspent": n.unspent,
        "block_height": n.block_height,
        "input_value": n.input_value,
        "output_value": n.output_value,
        "fee": n.fee,
        "error": n.error,
    }


def result_to_dict(r: TraceResult) -> Dict[str, Any]:
    c = r.counters
    return {
        "seed": str(r.seed),
        "seed_kind": r.seed.kind.value,
        "direction": r.direction.value,
        "status": r.status.value,
        "truncation_reasons": [s.value for s in r.truncation_reasons],
        "policy": {
            "max_depth": r.policy.max_depth,
            "max_outputs": r.policy.max_outputs,
            "dust_threshold": r.policy.dust_threshold,
            "max_nodes": r.policy.max_nodes,
            "concurrency": r.policy.concurrency,
            "max_retries": r.policy.max_retries,
            "run_deadline": r.policy.run_deadline,
        },
        "counters": {
            "nodes": c.node_count,
            "edges": c.edge_count,
            "pruned": c.pruned_count,
            "failed": c.failed_count,
            "traced_value": c.traced_value,
            "traced_btc": sats_to_btc(c.traced_value),
            "pruned_value": c.pruned_value,
            "pruned_btc": sats_to_btc(c.pruned_value),
            "stopped_value": c.stopped_value,
            "stopped_btc": sats_to_btc(c.stopped_value),
            "fetches": r.fetches,
            "retries": r.retries,
            "elapsed_sec": round(r.elapsed, 3),
        },
        "nodes": [_node_to_dict(n) for n in r.nodes.values()],
        "branches": [
            {
                "parent": str(parent),
                "traced_value": t.traced_value,
                "pruned_value": t.pruned_value,
                "stopped_value": t.stopped_value,
            }
            for parent, t in r.branch_totals.items()
        ],
        "edges": [
            {
                "from": e.outpoint.txid if e.is_creation else str(e.outpoint),
                "to": str(e.outpoint) if e.is_creation else e.txid,
                "outpoint": str(e.outpoint),
                "txid": e.txid,
                "type": "creation" if e.is_creation else "spend",
                "value": e.value,
            }
            for e in r.edges
        ],
        "violations": [
            {"node": str(v.key), "kind": v.kind, "detail": v.detail}
            for v in r.violations
        ],
    }
