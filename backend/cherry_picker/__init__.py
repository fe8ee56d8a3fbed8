"""
Cherry Picker
==============
Quality-weighted application and node selection for a blockchain relay
load balancer.

Architecture:
- config.py      → Selection thresholds, failure quotas, TTLs
- models.py      → Pydantic models (stored record, service log, API contracts)
- store.py       → Counter store adapter (Redis / in-memory)
- service_log.py → Raw record ↔ ServiceLog, result folding
- engine.py      → Ranking, weighted pool, selection, quality updates
- relay_log.py   → Request-scoped log context
- metrics.py     → In-memory metrics (counters, histograms)
- main.py        → FastAPI application (HTTP layer)
"""

from .config import SelectorConfig, load_config
from .models import (
    Application,
    Node,
    QualityRecord,
    ServiceLog,
    Session,
)
from .store import (
    MemoryQualityStore,
    QualityStore,
    QualityStoreError,
    RedisQualityStore,
    StoreUnavailableError,
)
from .service_log import MalformedRecordError, build_service_log
from .engine import CherryPicker, EmptyCandidatesError, rank_items, sort_logs
from .metrics import MetricsCollector

__all__ = [
    "SelectorConfig",
    "load_config",
    "Application",
    "Node",
    "QualityRecord",
    "ServiceLog",
    "Session",
    "MemoryQualityStore",
    "QualityStore",
    "QualityStoreError",
    "RedisQualityStore",
    "StoreUnavailableError",
    "MalformedRecordError",
    "build_service_log",
    "CherryPicker",
    "EmptyCandidatesError",
    "rank_items",
    "sort_logs",
    "MetricsCollector",
]
