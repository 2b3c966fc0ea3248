from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
import signal
import sys
import time
from typing import List, Optional

from btctracer.config import settings
from btctracer.core.errors import PolicyViolation
from btctracer.core.models import Direction, Seed, TracePolicy, TraceResult
from btctracer.ports.chain_data_port import ChainDataPort
from btctracer.services.tracer_service import TracerService
from btctracer.io.output_writer import write_result_json, write_summary_md

from btctracer.adapters.chain.bitcoin_rpc_chain_adapter import BitcoinRpcChainAdapter
from btctracer.adapters.chain.caching_chain_adapter import CachingChainAdapter
from btctracer.adapters.chain.esplora_chain_adapter import EsploraChainAdapter
from btctracer.adapters.chain.static_chain_adapter import StaticChainAdapter


def build_arg_parser() -> argparse.ArgumentParser:
    d = TracePolicy()
    p = argparse.ArgumentParser(prog="btc-tracer", description="Bitcoin UTXO value-flow tracer")
    p.add_argument("seed", help="Seed: txid:vout, txid or address")
    p.add_argument("--direction", choices=[x.value for x in Direction], default=Direction.FORWARD.value, help="Trace direction")
    p.add_argument("--max-depth", type=int, default=d.max_depth, help="Maximum spend hops from the seed")
    p.add_argument("--max-outputs", type=int, default=d.max_outputs, help="Branches kept per transaction (highest value first)")
    p.add_argument("--dust", type=int, default=d.dust_threshold, help="Skip branches below this many sats")
    p.add_argument("--max-nodes", type=int, default=d.max_nodes, help="Stop after this many nodes beyond the seed")
    p.add_argument("--concurrency", type=int, default=d.concurrency, help="Parallel data-source requests")
    p.add_argument("--max-retries", type=int, default=d.max_retries, help="Retries for transient source failures")
    p.add_argument("--fetch-timeout", type=float, default=d.fetch_timeout, help="Per-request timeout in seconds")
    p.add_argument("--deadline", type=float, default=d.run_deadline, help="Whole-run time limit in seconds")
    p.add_argument("--source", choices=["esplora", "rpc", "static"], default="esplora", help="Chain data source")
    p.add_argument("--esplora-url", default=settings.ESPLORA_BASE_URL, help="Esplora API base URL")
    p.add_argument("--static-file", help="JSON fixture for --source static")
    p.add_argument("--no-cache", action="store_true", help="Disable the in-memory lookup cache")
    p.add_argument("--cache-ttl", type=float, default=settings.CACHE_TTL_SEC, help="Cache TTL in seconds")
    p.add_argument("--out", default="out", help="Output folder")
    p.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (DEBUG, INFO, WARNING...)")
    return p


def _make_progress_reporter(seed: Seed, direction: Direction, policy: TracePolicy):
    start_time = time.time()
    last_print = 0.0
    is_tty = sys.stdout.isatty()

    def _ts() -> str:
        return dt.datetime.now().strftime("%H:%M:%S")

    def _print_line(message: str) -> None:
        if is_tty:
            sys.stdout.write("\r" + message.ljust(88))
            sys.stdout.flush()
        else:
            print(message)

    def _clear_line() -> None:
        if is_tty:
            sys.stdout.write("\r" + (" " * 88) + "\r")
            sys.stdout.flush()

    def progress(event: str, data: dict) -> None:
        nonlocal last_print
        now = time.time()
        if event == "start":
            print(f"[{_ts()}] Tracing {seed} • {direction.value} • depth {policy.max_depth}")
            return
        if event == "visit":
            if not is_tty and data["processed"] % 100 != 0:
                return
            if is_tty and now - last_print < 0.2:
                return
            msg = (
                f"Depth {data['depth']}/{policy.max_depth} • "
                f"queue {data['queue']} • "
                f"processed {data['processed']} • "
                f"nodes {data['nodes']}"
            )
            _print_line(msg)
            last_print = now
            return
        if event == "retry":
            msg = f"Retrying {data['key'][:16]}... (attempt {data['attempt'] + 1}, {data['delay']:.1f}s)"
            _print_line(msg)
            last_print = now
            return
        if event == "done":
            _clear_line()
            elapsed = time.time() - start_time
            print(
                f"[{_ts()}] {data['status'].capitalize()} in {elapsed:.1f}s • "
                f"{data['nodes']} nodes • {data['edges']} edges"
            )
            return
        if event == "error":
            _clear_line()
            print(f"[{_ts()}] Error: {data.get('message', 'Unknown error')}", file=sys.stderr)

    return progress


def _build_chain(args: argparse.Namespace) -> ChainDataPort:
    if args.source == "static":
        if not args.static_file:
            raise PolicyViolation("--source static requires --static-file")
        chain: ChainDataPort = StaticChainAdapter.from_json(args.static_file)
    elif args.source == "rpc":
        chain = BitcoinRpcChainAdapter()
    else:
        chain = EsploraChainAdapter(base_url=args.esplora_url)

    if args.no_cache:
        return chain
    return CachingChainAdapter(chain, ttl=args.cache_ttl)


async def _run(args: argparse.Namespace, seed: Seed, direction: Direction, policy: TracePolicy, progress) -> TraceResult:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # no signal handlers on this platform / thread
        pass

    try:
        async with _build_chain(args) as chain:
            svc = TracerService(chain)
            return await svc.trace(seed, direction, policy, cancel_event=cancel_event, on_progress=progress)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        seed = Seed.parse(args.seed)
        direction = Direction(args.direction)
        policy = TracePolicy(
            max_depth=args.max_depth,
            max_outputs=args.max_outputs,
            dust_threshold=args.dust,
            max_nodes=args.max_nodes,
            concurrency=args.concurrency,
            max_retries=args.max_retries,
            fetch_timeout=args.fetch_timeout,
            run_deadline=args.deadline,
        )
        policy.validate()
    except PolicyViolation as exc:
        print(f"Invalid trace request: {exc}", file=sys.stderr)
        return 2

    progress = _make_progress_reporter(seed, direction, policy)
    print(f"Source: {args.source}{'' if args.no_cache else ' (cached)'}")
    try:
        result = asyncio.run(_run(args, seed, direction, policy, progress))
    except PolicyViolation as exc:
        progress("error", {"message": str(exc)})
        return 2
    except Exception as exc:
        progress("error", {"message": f"{exc.__class__.__name__}: {exc}"})
        return 1

    # Outputs
    print("Writing outputs...")
    json_path = write_result_json(result, args.out)
    summary_path = write_summary_md(result, args.out)
    print(f"Wrote: {json_path}")
    print(f"Wrote: {summary_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
