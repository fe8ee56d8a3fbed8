"""
Cherry Picker Engine: Quality-Weighted Candidate Selection
=============================================================
Picks the application (LB relays) or session node (APP relays) that should
service a relay, biased by this hour's success rate and success latency.

Pipeline:
┌──────────────┐   ┌─────────────┐   ┌──────────┐   ┌────────────────┐   ┌──────────┐
│ Fetch raw    │──►│ Build       │──►│ Sort     │──►│ Weighted pool  │──►│ Uniform  │
│ records      │   │ ServiceLogs │   │ (rank)   │   │ (tiers, quota) │   │ draw     │
└──────────────┘   └─────────────┘   └──────────┘   └────────────────┘   └──────────┘

After the relay, update_service_quality() folds the result into two records:
the application's (15 minute TTL) and the node's (1 hour TTL).
"""

import asyncio
import json
import logging
import random
import time
from typing import List, Optional, Sequence, Tuple, TypeVar

from .config import RELAY_TYPE_APPLICATION, RELAY_TYPE_NODE, SelectorConfig
from .metrics import MetricsCollector
from .models import Application, Node, ServiceLog, Session
from .relay_log import RelayLogger, relay_logger
from .service_log import apply_result, build_service_log
from .store import QualityStore, QualityStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmptyCandidatesError(ValueError):
    """Selection was asked to choose from nothing."""
    pass


# ── Ranking ───────────────────────────────────────────────────────

def sort_logs(logs: Sequence[ServiceLog]) -> List[ServiceLog]:
    """Highest success rate first, then lowest average success latency."""
    return sorted(logs, key=lambda s: (-s.success_rate, s.average_success_latency))


def rank_items(
    sorted_logs: Sequence[ServiceLog],
    max_failures_per_period: int,
    config: Optional[SelectorConfig] = None,
) -> List[str]:
    """
    Expand sorted logs into a weighted pool of ids.

    weight_factor carries over the whole ranking, so within a tier an
    earlier candidate always gets more copies than a later one. The best
    candidate ends up about 10x as likely as one that has seen failures.
    """
    cfg = config or SelectorConfig()
    ranked_items: List[str] = []
    weight_factor = cfg.initial_weight_factor

    for log in sorted_logs:
        if log.success_rate > cfg.top_tier_rate:
            # Untested candidates land here too (rate 1)
            ranked_items.extend([log.id] * max(weight_factor, 0))
            weight_factor -= cfg.top_tier_decay
        elif log.success_rate > cfg.second_tier_rate:
            ranked_items.extend([log.id] * max(weight_factor, 0))
            weight_factor -= cfg.second_tier_decay
            if weight_factor <= 0:
                weight_factor = 1
        elif log.success_rate > 0:
            ranked_items.append(log.id)
        elif log.attempts < max_failures_per_period:
            ranked_items.append(log.id)
        # else: shelved until the hour bucket rolls over

    return ranked_items


def count_shelved(logs: Sequence[ServiceLog], max_failures_per_period: int) -> int:
    return sum(
        1 for log in logs
        if log.success_rate == 0 and log.attempts >= max_failures_per_period
    )


def pick(pool: Sequence[T], rng: random.Random) -> Tuple[int, T]:
    """Uniform draw. Returns (index, item)."""
    if not pool:
        raise EmptyCandidatesError("Cannot pick from an empty pool")
    index = rng.randrange(len(pool))
    return index, pool[index]


# ── Engine ────────────────────────────────────────────────────────

class CherryPicker:
    """
    Quality-weighted selection over a shared counter store.

    Usage:
        picker = CherryPicker(RedisQualityStore.from_url(url), config)
        app_id = await picker.cherry_pick_application(lb_id, app_ids, "0021", request_id)
        node = await picker.cherry_pick_node(application, session, "0021", request_id)
        ...
        await picker.update_service_quality("0021", app_id, node.public_key, 0.42, 200)
    """

    def __init__(
        self,
        store: QualityStore,
        config: Optional[SelectorConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.config = config or SelectorConfig()
        self.metrics = metrics
        self.rng = rng or random.Random()

    @property
    def check_debug(self) -> bool:
        return self.config.check_debug

    # ── Selection ─────────────────────────────────────────────────

    async def cherry_pick_application(
        self,
        load_balancer_id: str,
        applications: Sequence[str],
        blockchain: str,
        request_id: str,
    ) -> str:
        """Choose which of a load balancer's applications sends the relay."""
        log = relay_logger(logger, request_id, RELAY_TYPE_APPLICATION, load_balancer_id)
        if not applications:
            raise EmptyCandidatesError(
                f"Load balancer {load_balancer_id} has no applications to choose from"
            )

        start = time.monotonic()
        logs = await self.service_logs(blockchain, applications)
        return self._select(
            logs,
            list(applications),
            self.config.application_max_failures,
            RELAY_TYPE_APPLICATION,
            "applications",
            log,
            start,
        )

    async def cherry_pick_node(
        self,
        application: Application,
        session: Session,
        blockchain: str,
        request_id: str,
    ) -> Node:
        """Choose which session node services the relay."""
        log = relay_logger(logger, request_id, RELAY_TYPE_NODE, application.id)
        if not session.session_nodes:
            raise EmptyCandidatesError(
                f"Session for application {application.id} has no nodes"
            )

        raw_nodes = {node.public_key: node for node in session.session_nodes}
        raw_node_ids = [node.public_key for node in session.session_nodes]

        start = time.monotonic()
        logs = await self.service_logs(blockchain, raw_node_ids)
        selected = self._select(
            logs,
            raw_node_ids,
            self.config.node_max_failures,
            RELAY_TYPE_NODE,
            "nodes",
            log,
            start,
        )
        return raw_nodes[selected]

    def _select(
        self,
        logs: List[ServiceLog],
        candidate_ids: List[str],
        max_failures: int,
        relay_type: str,
        label: str,
        log: RelayLogger,
        start: float,
    ) -> str:
        sorted_logs = sort_logs(logs)
        if self.check_debug:
            log.debug(
                "Sorted logs: "
                + json.dumps([s.model_dump() for s in sorted_logs])
            )

        ranked_items = rank_items(sorted_logs, max_failures, self.config)

        fallback = False
        if not ranked_items:
            log.warning(f"Cherry picking failure -- {label}")
            ranked_items = candidate_ids
            fallback = True

        index, selected = pick(ranked_items, self.rng)
        if self.check_debug:
            log.debug(f"Number of weighted {label} for selection: {len(ranked_items)}")
            log.debug(f"Selected {index} : {selected}")

        if self.metrics:
            self.metrics.record_selection(
                relay_type=relay_type,
                selected=selected,
                pool_size=len(ranked_items),
                shelved=count_shelved(logs, max_failures),
                fallback=fallback,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        return selected

    async def service_logs(
        self, blockchain: str, ids: Sequence[str]
    ) -> List[ServiceLog]:
        """Current-hour ServiceLogs for each id, in input order."""
        fetches = [
            asyncio.ensure_future(self.fetch_raw_service_log(blockchain, id))
            for id in ids
        ]
        try:
            raw_logs = await asyncio.gather(*fetches)
        except BaseException:
            # Nothing may outlive the call
            for fetch in fetches:
                fetch.cancel()
            raise
        return [
            build_service_log(
                id, raw, self.config.latency_precision, self.config.success_code
            )
            for id, raw in zip(ids, raw_logs)
        ]

    async def fetch_raw_service_log(
        self, blockchain: str, id: str
    ) -> Optional[str]:
        try:
            return await self.store.fetch(blockchain, id)
        except QualityStoreError:
            if self.metrics:
                self.metrics.record_store_error("fetch")
            raise

    # ── Quality Updates ───────────────────────────────────────────

    async def update_service_quality(
        self,
        blockchain: str,
        application_id: str,
        service_node: str,
        elapsed_time: float,
        result: int,
    ) -> None:
        """
        Record a relay result against the application and the node.

        Stored shape: { results: { 200: x, 500: y, ... }, averageSuccessLatency: z }
        """
        if self.metrics:
            self.metrics.record_outcome(result, elapsed_time)
        await self._update_service_quality(
            blockchain, application_id, elapsed_time, result,
            self.config.application_ttl_s,
        )
        await self._update_service_quality(
            blockchain, service_node, elapsed_time, result,
            self.config.node_ttl_s,
        )

    async def _update_service_quality(
        self,
        blockchain: str,
        id: str,
        elapsed_time: float,
        result: int,
        ttl: int,
    ) -> None:
        precision = self.config.latency_precision

        def fold(raw: Optional[str]) -> str:
            record = apply_result(
                raw, elapsed_time, result, precision, self.config.success_code
            )
            return record.to_wire(precision)

        try:
            if self.config.atomic_updates:
                await self.store.transact(blockchain, id, fold, ttl)
            else:
                # Read-modify-write; a concurrent update to the same key can be lost
                raw = await self.store.fetch(blockchain, id)
                await self.store.persist(blockchain, id, fold(raw), ttl)
        except QualityStoreError:
            if self.metrics:
                self.metrics.record_store_error("update")
            raise
