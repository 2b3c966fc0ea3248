from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from btctracer.config import settings
from btctracer.core.dto import OutPoint
from btctracer.core.errors import PolicyViolation


@dataclass(frozen=True, order=True)
class AddressKey:
    address: str

    def __str__(self) -> str:
        return self.address


# Identity of a trace node: txid (tx), outpoint (output) or address (address seed)
NodeKey = Union[str, OutPoint, AddressKey]

_TXID_RE = re.compile(r"^[0-9a-f]{64}$")
_BASE58_RE = re.compile(r"^[123mn][1-9A-HJ-NP-Za-km-z]{25,34}$")
_BECH32_RE = re.compile(r"^(bc|tb|bcrt)1[02-9ac-hj-np-z]{6,87}$")


def is_txid(text: str) -> bool:
    return bool(_TXID_RE.match(text))


def is_address(text: str) -> bool:
    return bool(_BASE58_RE.match(text) or _BECH32_RE.match(text.lower()))



# Enumerations

class Direction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    BOTH = "both"

    @property
    def forward(self) -> bool:
        return self in (Direction.FORWARD, Direction.BOTH)

    @property
    def backward(self) -> bool:
        return self in (Direction.BACKWARD, Direction.BOTH)


class NodeKind(str, Enum):
    TX = "tx"
    OUTPUT = "output"
    ADDRESS = "address"


class NodeState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"
    PRUNED = "pruned"

    @property
    def terminal(self) -> bool:
        return self is not NodeState.PENDING


class StopReason(str, Enum):
    NODE_CAP = "nodeCapReached"
    DEADLINE = "deadlineExceeded"
    CANCELLED = "cancelled"


class PruneReason(str, Enum):
    FANOUT_CAPPED = "fanoutCapped"
    BELOW_DUST = "belowDustThreshold"
    DEPTH_LIMIT = "depthLimit"
    NODE_CAP = StopReason.NODE_CAP.value
    DEADLINE = StopReason.DEADLINE.value
    CANCELLED = StopReason.CANCELLED.value


class FailureReason(str, Enum):
    NOT_FOUND = "notFound"
    SOURCE_UNAVAILABLE = "sourceUnavailable"
    INVALID_QUERY = "invalidQuery"
    UNSUPPORTED = "unsupported"
    DATA_INTEGRITY = "dataIntegrity"


class TraceStatus(str, Enum):
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"


class RunPhase(str, Enum):
    SEEDED = "seeded"
    EXPANDING = "expanding"
    DRAINING = "draining"
    COMPLETED = "completed"


class SeedKind(str, Enum):
    OUTPOINT = "outpoint"
    TXID = "txid"
    ADDRESS = "address"



# Seed / policy

@dataclass(frozen=True)
class Seed:
    """
    Starting point of a trace: an outpoint, a transaction id or an address.
    """

    kind: SeedKind
    txid: Optional[str] = None
    vout: Optional[int] = None
    address: Optional[str] = None

    @classmethod
    def from_outpoint(cls, outpoint: OutPoint) -> "Seed":
        return cls(SeedKind.OUTPOINT, txid=outpoint.txid, vout=outpoint.vout)

    @classmethod
    def from_txid(cls, txid: str) -> "Seed":
        return cls(SeedKind.TXID, txid=txid)

    @classmethod
    def from_address(cls, address: str) -> "Seed":
        return cls(SeedKind.ADDRESS, address=address)

    @classmethod
    def parse(cls, text: str) -> "Seed":
        raw = (text or "").strip()
        if ":" in raw:
            try:
                op = OutPoint.parse(raw)
            except ValueError as e:
                raise PolicyViolation(str(e)) from e
            seed = cls.from_outpoint(op)
        elif is_txid(raw.lower()):
            seed = cls.from_txid(raw.lower())
        elif is_address(raw):
            seed = cls.from_address(raw)
        else:
            raise PolicyViolation(f"Seed is not an outpoint, txid or address: {text!r}")
        seed.validate()
        return seed

    @property
    def outpoint(self) -> Optional[OutPoint]:
        if self.kind is SeedKind.OUTPOINT and self.txid is not None and self.vout is not None:
            return OutPoint(self.txid, self.vout)
        return None

    def validate(self) -> None:
        if self.kind in (SeedKind.OUTPOINT, SeedKind.TXID):
            if not self.txid or not is_txid(self.txid):
                raise PolicyViolation(f"Malformed seed txid: {self.txid!r}")
        if self.kind is SeedKind.OUTPOINT and (self.vout is None or self.vout < 0):
            raise PolicyViolation(f"Malformed seed output index: {self.vout!r}")
        if self.kind is SeedKind.ADDRESS and (not self.address or not is_address(self.address)):
            raise PolicyViolation(f"Malformed seed address: {self.address!r}")

    def __str__(self) -> str:
        if self.kind is SeedKind.ADDRESS:
            return str(self.address)
        if self.kind is SeedKind.OUTPOINT:
            return f"{self.txid}:{self.vout}"
        return str(self.txid)


@dataclass(frozen=True)
class TracePolicy:
    """
    Traversal limits for one run. Defaults come from config/settings.
    """

    max_depth: int = settings.TRACE_MAX_DEPTH
    max_outputs: int = settings.TRACE_MAX_OUTPUTS
    dust_threshold: int = settings.TRACE_DUST_THRESHOLD_SATS   # sats
    max_nodes: int = settings.TRACE_MAX_NODES                  # beyond the seed(s)
    concurrency: int = settings.TRACE_CONCURRENCY

    # retry / backoff for transient data-source failures
    max_retries: int = settings.TRACE_MAX_RETRIES
    backoff_initial: float = settings.TRACE_BACKOFF_INITIAL_SEC
    backoff_factor: float = settings.TRACE_BACKOFF_FACTOR
    backoff_cap: float = settings.TRACE_BACKOFF_CAP_SEC
    backoff_jitter: float = settings.TRACE_BACKOFF_JITTER

    # timeouts (seconds)
    fetch_timeout: float = settings.TRACE_FETCH_TIMEOUT_SEC
    run_deadline: Optional[float] = settings.TRACE_RUN_DEADLINE_SEC
    cancel_grace: float = settings.TRACE_CANCEL_GRACE_SEC

    def validate(self) -> None:
        checks = [
            (self.max_depth >= 0, "max_depth must be >= 0"),
            (self.max_outputs >= 1, "max_outputs must be >= 1"),
            (self.dust_threshold >= 0, "dust_threshold must be >= 0"),
            (self.max_nodes >= 1, "max_nodes must be >= 1"),
            (self.concurrency >= 1, "concurrency must be >= 1"),
            (self.max_retries >= 0, "max_retries must be >= 0"),
            (self.backoff_initial >= 0, "backoff_initial must be >= 0"),
            (self.backoff_factor >= 1, "backoff_factor must be >= 1"),
            (self.backoff_cap >= self.backoff_initial, "backoff_cap must be >= backoff_initial"),
            (0 <= self.backoff_jitter < 1, "backoff_jitter must be in [0, 1)"),
            (self.fetch_timeout > 0, "fetch_timeout must be > 0"),
            (self.run_deadline is None or self.run_deadline > 0, "run_deadline must be > 0"),
            (self.cancel_grace >= 0, "cancel_grace must be >= 0"),
        ]
        for ok, msg in checks:
            if not ok:
                raise PolicyViolation(msg)



# Graph models

@dataclass
class TraceNode:

    key: NodeKey
    kind: NodeKind
    depth: int
    direction: Optional[Direction]       # None for seed nodes
    state: NodeState = NodeState.PENDING
    reason: Optional[str] = None         # prune / failure reason code
    parent: Optional[NodeKey] = None
    is_seed: bool = False

    # output nodes
    value: Optional[int] = None
    address: Optional[str] = None
    spent_by: Optional[str] = None
    unspent: Optional[bool] = None

    # tx nodes
    block_height: Optional[int] = None
    input_value: Optional[int] = None
    output_value: Optional[int] = None
    fee: Optional[int] = None

    error: Optional[str] = None


@dataclass(frozen=True)
class TraceEdge:

    outpoint: OutPoint
    txid: str
    value: int

    @property
    def is_creation(self) -> bool:
        # tx -> output it created; otherwise output -> tx that spent it
        return self.outpoint.txid == self.txid

    @property
    def key(self) -> Tuple[OutPoint, str]:
        return (self.outpoint, self.txid)


@dataclass(frozen=True)
class IntegrityViolation:

    key: NodeKey
    kind: str          # valueConservation | spendMismatch | doubleSpend | malformedData
    detail: str


@dataclass(frozen=True)
class GraphCounters:

    node_count: int = 0
    edge_count: int = 0
    pruned_count: int = 0
    failed_count: int = 0
    traced_value: int = 0
    pruned_value: int = 0
    stopped_value: int = 0


@dataclass(frozen=True)
class BranchTotals:
    """Child values under one parent, split by how each branch ended."""

    traced_value: int = 0
    pruned_value: int = 0     # cut by policy (fan-out, dust, depth)
    stopped_value: int = 0    # left unexpanded by a stop


@dataclass
class TraceResult:

    seed: Seed
    direction: Direction
    policy: TracePolicy
    status: TraceStatus
    truncation_reasons: List[StopReason] = field(default_factory=list)
    nodes: Dict[NodeKey, TraceNode] = field(default_factory=dict)
    edges: List[TraceEdge] = field(default_factory=list)
    counters: GraphCounters = field(default_factory=GraphCounters)
    branch_totals: Dict[NodeKey, BranchTotals] = field(default_factory=dict)
    violations: List[IntegrityViolation] = field(default_factory=list)
    fetches: int = 0
    retries: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def pruned(self) -> List[TraceNode]:
        return [n for n in self.nodes.values() if n.state is NodeState.PRUNED]

    @property
    def failures(self) -> List[TraceNode]:
        return [n for n in self.nodes.values() if n.state is NodeState.FAILED]

    @property
    def elapsed(self) -> float:
        return max(0.0, self.finished_at - self.started_at)
