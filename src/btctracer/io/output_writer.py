from __future__ import annotations

import json
from pathlib import Path

from btctracer.core.models import NodeKind, NodeState, TraceResult, TraceStatus
from btctracer.io.schemas import result_to_dict, sats_to_btc


def write_result_json(result: TraceResult, out_dir: str, filename: str = "trace.json") -> str:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)

    out_path = p / filename
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(result_to_dict(result), f, indent=2)

    return str(out_path)


def write_summary_md(result: TraceResult, out_dir: str, filename: str = "summary.md") -> str:
    """
    Minimal, investigator-friendly summary.
    """
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)

    out_path = p / filename
    c = result.counters

    def btc(sats) -> str:
        v = sats_to_btc(sats)
        return f"{v} BTC" if v is not None else "unknown"

    def short(key) -> str:
        s = str(key)
        return s if len(s) <= 20 else f"{s[:12]}...{s[-6:]}"

    def interpretation() -> str:
        if result.status is TraceStatus.CANCELLED:
            return "The trace was cancelled; the graph below is partial."
        if result.status is TraceStatus.TRUNCATED:
            reasons = ", ".join(r.value for r in result.truncation_reasons)
            return f"The trace stopped early ({reasons}); pending branches were marked pruned."
        if result.failures:
            return "The trace completed, but some lookups failed; failed branches are listed below."
        return "The trace completed within the configured limits."

    lines = []
    lines.append("# Trace Summary\n")
    lines.append(f"- Seed: **{result.seed}** ({result.seed.kind.value})\n")
    lines.append(f"- Direction: **{result.direction.value}**\n")
    lines.append(f"- Status: **{result.status.value}**\n")
    lines.append(f"- Nodes: **{c.node_count}** | Edges: **{c.edge_count}**\n")
    lines.append(
        f"- Traced value: **{btc(c.traced_value)}** | Pruned value: **{btc(c.pruned_value)}**"
        f" | Stopped value: **{btc(c.stopped_value)}**\n"
    )
    lines.append(f"- Fetches: {result.fetches} (retries: {result.retries}) in {result.elapsed:.2f}s\n")
    lines.append("\n")

    lines.append("## Top 15 Flows (by value)\n\n")
    spends = sorted((e for e in result.edges if not e.is_creation), key=lambda e: e.value, reverse=True)[:15]
    if not spends:
        lines.append("_No spends were traced._\n\n")
    else:
        for e in spends:
            lines.append(f"- **{btc(e.value)}** | {short(e.outpoint)} -> {short(e.txid)}\n")
        lines.append("\n")

    lines.append("## Unspent Outputs\n\n")
    unspent = [n for n in result.nodes.values() if n.kind is NodeKind.OUTPUT and n.unspent]
    if not unspent:
        lines.append("_None reached._\n\n")
    else:
        for n in sorted(unspent, key=lambda n: n.value or 0, reverse=True):
            lines.append(f"- **{btc(n.value)}** | {n.key} | {n.address or '-'}\n")
        lines.append("\n")

    lines.append("## Pruned Branches\n\n")
    if not result.pruned:
        lines.append("_None._\n\n")
    else:
        for n in result.pruned:
            lines.append(f"- {short(n.key)} | {n.reason} | {btc(n.value)}\n")
        lines.append("\n")

    lines.append("## Failed Lookups\n\n")
    failed = [n for n in result.nodes.values() if n.state is NodeState.FAILED]
    if not failed:
        lines.append("_None._\n\n")
    else:
        for n in failed:
            lines.append(f"- {short(n.key)} | {n.reason} | {n.error or ''}\n")
        lines.append("\n")

    if result.violations:
        lines.append("## Integrity Violations\n\n")
        for v in result.violations:
            lines.append(f"- {short(v.key)} | {v.kind} | {v.detail}\n")
        lines.append("\n")

    lines.append("## Interpretation\n\n")
    lines.append(interpretation() + "\n")

    out_path.write_text("".join(lines), encoding="utf-8")
    return str(out_path)
