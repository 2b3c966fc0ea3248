from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Union

from btctracer.adapters.chain.rate_limiter import backoff_delay
from btctracer.core.dto import OutPoint
from btctracer.core.errors import (
    DataIntegrityError,
    DataSourceError,
    InvalidQueryError,
    NotFoundError,
    SourceUnavailableError,
    UnsupportedQueryError,
)
from btctracer.core.models import (
    Direction,
    FailureReason,
    NodeKey,
    PruneReason,
    StopReason,
    TracePolicy,
)
from btctracer.ports.chain_data_port import ChainDataPort

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str, Dict[str, Any]], None]


class EntryKind(str, Enum):
    TX = "tx"              # fetch + expand a tx node
    DESCRIBE = "describe"  # fetch a tx to learn seed output values
    SPEND = "spend"        # who spent this output?
    ADDRESS = "address"    # outputs paying an address


@dataclass(eq=False)
class FrontierEntry:
    kind: EntryKind
    key: NodeKey                       # owning node
    target: Union[str, OutPoint]       # txid, outpoint or address handed to the data source
    depth: int
    direction: Optional[Direction] = None
    context: Any = None
    attempt: int = 0
    settled: bool = False


@dataclass(frozen=True)
class Branch:
    key: NodeKey
    value: Optional[int]   # sats, None when the source did not report it
    depth: int
    index: int             # position among the parent's outputs / inputs


@dataclass(frozen=True)
class BranchDecision:
    branch: Branch
    reason: Optional[PruneReason] = None

    @property
    def keep(self) -> bool:
        return self.reason is None


class FrontierHandler(Protocol):
    def on_result(self, entry: FrontierEntry, result: Any) -> None: ...
    def on_failure(self, entry: FrontierEntry, exc: BaseException, reason: FailureReason) -> None: ...
    def on_skipped(self, entry: FrontierEntry, reason: StopReason) -> None: ...


def failure_reason(exc: BaseException) -> FailureReason:
    if isinstance(exc, NotFoundError):
        return FailureReason.NOT_FOUND
    if isinstance(exc, InvalidQueryError):
        return FailureReason.INVALID_QUERY
    if isinstance(exc, UnsupportedQueryError):
        return FailureReason.UNSUPPORTED
    if isinstance(exc, DataIntegrityError):
        return FailureReason.DATA_INTEGRITY
    return FailureReason.SOURCE_UNAVAILABLE


@dataclass
class _Stats:
    dispatched: int = 0
    retries: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0


class FrontierScheduler:
    """
    Holds not-yet-expanded work, applies the branch policy and dispatches
    data-source fetches over a bounded pool of worker tasks.

    Transient failures (SourceUnavailableError, RateLimitError, per-fetch
    timeouts) go to a retry queue: the entry is re-enqueued after an
    exponential backoff delay, so it does not hold a worker while waiting.

    stop() is the single cooperative stop signal. Queued and backing-off
    entries are skipped at once; in-flight fetches get policy.cancel_grace
    seconds to land before they are cancelled.
    """

    def __init__(
        self,
        chain: ChainDataPort,
        policy: TracePolicy,
        handler: FrontierHandler,
        on_progress: Optional[ProgressFn] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.chain = chain
        self.policy = policy
        self.handler = handler
        self._progress = on_progress
        self._rand = rand

        self._queue: "asyncio.Queue[FrontierEntry]" = asyncio.Queue()
        self._outstanding = 0
        self._in_flight: Set[FrontierEntry] = set()
        self._retrying: Dict[FrontierEntry, asyncio.TimerHandle] = {}

        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_event = asyncio.Event()
        self._stop_reasons: List[StopReason] = []
        self._crash: Optional[BaseException] = None

        self.stats = _Stats()

    # -------------------------
    # Policy
    # -------------------------

    def select(self, branches: Sequence[Branch]) -> List[BranchDecision]:
        """
        Decide which branches of one parent get traced.

        Fan-out sampling runs over the whole branch set first (keep the
        max_outputs highest-value branches, unknown values last, ties by
        index); the survivors are then checked against depth and dust.
        """
        ranked = sorted(branches, key=self._rank_key)
        capped = {b.index for b in ranked[self.policy.max_outputs:]}

        decisions: List[BranchDecision] = []
        for b in branches:
            if b.index in capped:
                reason: Optional[PruneReason] = PruneReason.FANOUT_CAPPED
            elif b.depth > self.policy.max_depth:
                reason = PruneReason.DEPTH_LIMIT
            elif b.value is not None and b.value < self.policy.dust_threshold:
                reason = PruneReason.BELOW_DUST
            else:
                reason = None
            decisions.append(BranchDecision(branch=b, reason=reason))
        return decisions

    def can_descend(self, depth: int) -> bool:
        return depth + 1 <= self.policy.max_depth

    @staticmethod
    def _rank_key(b: Branch):
        # unknown value goes last
        return (b.value is None, -(b.value or 0), b.index)

    # -------------------------
    # Frontier
    # -------------------------

    def push(self, entry: FrontierEntry) -> None:
        self._outstanding += 1
        self._idle.clear()
        if self.stopped:
            self._skip(entry)
            return
        self._queue.put_nowait(entry)

    @property
    def outstanding(self) -> int:
        return self._outstanding

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def stop_reasons(self) -> List[StopReason]:
        return list(self._stop_reasons)

    def stop(self, reason: StopReason) -> None:
        if reason not in self._stop_reasons:
            self._stop_reasons.append(reason)
        if self.stopped:
            return
        logger.info("frontier stopping: %s (%d outstanding)", reason.value, self._outstanding)
        self._stop_event.set()

        while True:
            try:
                entry = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._skip(entry)

        for entry, handle in list(self._retrying.items()):
            handle.cancel()
            del self._retrying[entry]
            self._skip(entry)

    # -------------------------
    # Dispatch
    # -------------------------

    async def run(self) -> None:
        if self._outstanding == 0:
            return
        workers = [
            asyncio.create_task(self._worker(i), name=f"frontier-worker-{i}")
            for i in range(self.policy.concurrency)
        ]
        try:
            await self._wait_drained()
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            for handle in self._retrying.values():
                handle.cancel()

        if self._crash is not None:
            raise self._crash

    async def _wait_drained(self) -> None:
        while not self._idle.is_set():
            if self.stopped:
                try:
                    await asyncio.wait_for(self._idle.wait(), timeout=self.policy.cancel_grace)
                except asyncio.TimeoutError:
                    self._abort_in_flight()
                return

            idle = asyncio.ensure_future(self._idle.wait())
            stop = asyncio.ensure_future(self._stop_event.wait())
            try:
                await asyncio.wait({idle, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                idle.cancel()
                stop.cancel()

    async def _worker(self, worker_id: int) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._process(entry)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("frontier worker %d crashed on %s", worker_id, entry.key)
                self._crash = exc
                self._idle.set()
                return

    async def _process(self, entry: FrontierEntry) -> None:
        if self.stopped:
            self._skip(entry)
            return

        self._in_flight.add(entry)
        try:
            result = await asyncio.wait_for(self._fetch(entry), timeout=self.policy.fetch_timeout)
        except (SourceUnavailableError, asyncio.TimeoutError) as exc:
            self._in_flight.discard(entry)
            if entry.attempt < self.policy.max_retries and not self.stopped:
                self._schedule_retry(entry, exc)
            else:
                self._fail(entry, exc, FailureReason.SOURCE_UNAVAILABLE)
            return
        except DataSourceError as exc:
            self._in_flight.discard(entry)
            self._fail(entry, exc, failure_reason(exc))
            return

        self._in_flight.discard(entry)
        if entry.settled:
            # aborted while the fetch was landing
            return
        try:
            self.handler.on_result(entry, result)
        finally:
            self.stats.completed += 1
            self._settle(entry)

    async def _fetch(self, entry: FrontierEntry) -> Any:
        self.stats.dispatched += 1
        target = str(entry.target)
        logger.debug("fetch %s %s (attempt %d)", entry.kind.value, target, entry.attempt + 1)

        if entry.kind in (EntryKind.TX, EntryKind.DESCRIBE):
            return await self.chain.get_transaction(str(entry.target))
        if entry.kind is EntryKind.SPEND:
            assert isinstance(entry.target, OutPoint)
            return await self.chain.get_spending_transaction(entry.target)
        if entry.kind is EntryKind.ADDRESS:
            return await self.chain.get_outputs_for_address(str(entry.target))
        raise ValueError(f"Unknown frontier entry kind: {entry.kind}")

    # ---------- retry queue ----------

    def _schedule_retry(self, entry: FrontierEntry, exc: BaseException) -> None:
        p = self.policy
        delay = backoff_delay(
            entry.attempt,
            base=p.backoff_initial,
            factor=p.backoff_factor,
            cap=p.backoff_cap,
            jitter=p.backoff_jitter,
            rand=self._rand,
        )
        entry.attempt += 1
        self.stats.retries += 1
        logger.info(
            "retrying %s %s in %.2fs (attempt %d/%d): %s",
            entry.kind.value, entry.target, delay, entry.attempt + 1, p.max_retries + 1, exc,
        )
        self._emit("retry", {"key": str(entry.key), "attempt": entry.attempt, "delay": delay})
        loop = asyncio.get_running_loop()
        self._retrying[entry] = loop.call_later(delay, self._requeue, entry)

    def _requeue(self, entry: FrontierEntry) -> None:
        if self._retrying.pop(entry, None) is None:
            return
        if self.stopped:
            self._skip(entry)
            return
        self._queue.put_nowait(entry)

    # ---------- terminal outcomes ----------

    def _fail(self, entry: FrontierEntry, exc: BaseException, reason: FailureReason) -> None:
        logger.warning("fetch failed for %s (%s): %s", entry.key, reason.value, exc)
        self.stats.failed += 1
        try:
            self.handler.on_failure(entry, exc, reason)
        finally:
            self._settle(entry)

    def _skip(self, entry: FrontierEntry) -> None:
        if entry.settled:
            return
        self.stats.skipped += 1
        reason = self._stop_reasons[0] if self._stop_reasons else StopReason.CANCELLED
        try:
            self.handler.on_skipped(entry, reason)
        finally:
            self._settle(entry)

    def _abort_in_flight(self) -> None:
        for entry in list(self._in_flight):
            logger.warning("abandoning in-flight fetch for %s after grace period", entry.key)
            self._in_flight.discard(entry)
            self.handler.on_skipped(entry, StopReason.CANCELLED)
            self._settle(entry)
        self._idle.set()

    def _settle(self, entry: FrontierEntry) -> None:
        if entry.settled:
            return
        entry.settled = True
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._progress is not None:
            self._progress(event, data)
