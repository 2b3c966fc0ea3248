import os
from dotenv import load_dotenv
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


# ---- Esplora (mempool.space / blockstream.info compatible) ----
ESPLORA_BASE_URL = os.environ.get("ESPLORA_BASE_URL", "https://mempool.space/api")
ESPLORA_REQUESTS_PER_SEC = _env_float("ESPLORA_REQUESTS_PER_SEC", 10.0)
ESPLORA_TIMEOUT_SEC = _env_float("ESPLORA_TIMEOUT_SEC", 15.0)
ESPLORA_MAX_ADDRESS_PAGES = _env_int("ESPLORA_MAX_ADDRESS_PAGES", 4)

# ---- Bitcoin Core JSON-RPC ----
BITCOIN_RPC_URL = os.environ.get("BITCOIN_RPC_URL", "http://127.0.0.1:8332")
BITCOIN_RPC_USER = os.environ.get("BITCOIN_RPC_USER")
BITCOIN_RPC_PASSWORD = os.environ.get("BITCOIN_RPC_PASSWORD")
BITCOIN_RPC_TIMEOUT_SEC = _env_float("BITCOIN_RPC_TIMEOUT_SEC", 30.0)

# ---- Cache ----
CACHE_TTL_SEC = _env_float("CACHE_TTL_SEC", 300.0)
CACHE_MAX_ENTRIES = _env_int("CACHE_MAX_ENTRIES", 10000)

# ---- Trace policy defaults ----
TRACE_MAX_DEPTH = _env_int("TRACE_MAX_DEPTH", 3)
TRACE_MAX_OUTPUTS = _env_int("TRACE_MAX_OUTPUTS", 25)
TRACE_DUST_THRESHOLD_SATS = _env_int("TRACE_DUST_THRESHOLD_SATS", 546)
TRACE_MAX_NODES = _env_int("TRACE_MAX_NODES", 1000)
TRACE_CONCURRENCY = _env_int("TRACE_CONCURRENCY", 4)
TRACE_MAX_RETRIES = _env_int("TRACE_MAX_RETRIES", 3)
TRACE_BACKOFF_INITIAL_SEC = _env_float("TRACE_BACKOFF_INITIAL_SEC", 0.5)
TRACE_BACKOFF_FACTOR = _env_float("TRACE_BACKOFF_FACTOR", 2.0)
TRACE_BACKOFF_CAP_SEC = _env_float("TRACE_BACKOFF_CAP_SEC", 8.0)
TRACE_BACKOFF_JITTER = _env_float("TRACE_BACKOFF_JITTER", 0.3)
TRACE_FETCH_TIMEOUT_SEC = _env_float("TRACE_FETCH_TIMEOUT_SEC", 15.0)
TRACE_CANCEL_GRACE_SEC = _env_float("TRACE_CANCEL_GRACE_SEC", 5.0)
# empty = no run deadline
_run_deadline = os.environ.get("TRACE_RUN_DEADLINE_SEC")
TRACE_RUN_DEADLINE_SEC = float(_run_deadline) if _run_deadline else None

# ---- Logging ----
LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
