"""
Cherry Picker Service (HTTP layer)
====================================
Port: 8021

Exposes quality-weighted selection to the relayer:

┌──────────┐   ┌──────────────┐   ┌──────────────────┐
│ API Layer │──►│ CherryPicker │──►│ Quality Store    │
│ (FastAPI) │   │ (engine)     │   │ (Redis / memory) │
└──────────┘   └──────────────┘   └──────────────────┘
      │               │
      ▼               ▼
┌──────────┐   ┌──────────────┐
│ Metrics  │   │ Relay logs   │
└──────────┘   └──────────────┘

Flow per relay:
1. POST /select/application → which application sends the relay
2. POST /select/node        → which session node services it
3. POST /outcomes           → fold elapsed time + result into both records
"""

import logging
import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query

from .config import SelectorConfig, load_config
from .engine import CherryPicker, EmptyCandidatesError, sort_logs
from .metrics import MetricsCollector
from .models import (
    ApplicationSelection,
    HealthResponse,
    NodeSelection,
    RelayOutcome,
    SelectApplicationRequest,
    SelectNodeRequest,
)
from .relay_log import configure_logging
from .store import (
    MemoryQualityStore,
    QualityStore,
    QualityStoreError,
    RedisQualityStore,
)

# ── Environment ──────────────────────────────────────────────────
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

logger = logging.getLogger("cherry_picker")


def _build_store(config: SelectorConfig) -> QualityStore:
    if not config.redis_url:
        logger.warning("⚠️  No redis_url configured, quality history is process-local")
        return MemoryQualityStore()
    return RedisQualityStore.from_url(
        config.redis_url, max_cas_attempts=config.max_cas_attempts
    )


def create_app(
    config: Optional[SelectorConfig] = None,
    store: Optional[QualityStore] = None,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """Build the service. Tests pass their own store and seeded rng."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: Config → Store → Metrics → Engine
        Shutdown: Close store
        """
        cfg = config or load_config()
        app.state.config = cfg

        app.state.store = store or _build_store(cfg)
        try:
            await app.state.store.ping()
            logger.info(f"✅ Quality store ready ({type(app.state.store).__name__})")
        except QualityStoreError as e:
            logger.error(f"❌ Quality store unreachable: {e}")

        app.state.metrics = MetricsCollector(buffer_size=cfg.metrics_buffer_size)
        app.state.picker = CherryPicker(
            app.state.store, cfg, metrics=app.state.metrics, rng=rng
        )
        logger.info(
            f"✅ Cherry picker ready (app quota={cfg.application_max_failures}, "
            f"node quota={cfg.node_max_failures}, atomic={cfg.atomic_updates})"
        )

        yield

        await app.state.store.close()
        logger.info("Cherry picker shut down cleanly")

    app = FastAPI(
        title="Cherry Picker",
        version="1.0.0",
        description="Quality-weighted application and node selection for relays",
        lifespan=lifespan,
    )

    @app.get("/")
    async def root():
        return {
            "service": "Cherry Picker",
            "version": "1.0.0",
            "port": 8021,
            "features": [
                "weighted-application-selection",
                "weighted-node-selection",
                "failure-quota-shelving",
                "hourly-quality-history",
            ],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health():
        metrics: MetricsCollector = app.state.metrics
        try:
            store_ok = await app.state.store.ping()
        except QualityStoreError:
            store_ok = False
        return HealthResponse(
            status="healthy" if store_ok else "degraded",
            store="connected" if store_ok else "disconnected",
            uptime_seconds=metrics.uptime_seconds,
            metrics_summary=metrics.health_summary(),
        )

    @app.post("/select/application", response_model=ApplicationSelection)
    async def select_application(body: SelectApplicationRequest):
        picker: CherryPicker = app.state.picker
        try:
            application_id = await picker.cherry_pick_application(
                body.load_balancer_id,
                body.application_ids,
                body.blockchain,
                body.request_id,
            )
        except EmptyCandidatesError as e:
            raise HTTPException(400, str(e))
        except QualityStoreError as e:
            logger.error(f"Application selection failed: {e}", exc_info=True)
            raise HTTPException(503, "Quality store unavailable")
        return ApplicationSelection(application_id=application_id)

    @app.post("/select/node", response_model=NodeSelection)
    async def select_node(body: SelectNodeRequest):
        picker: CherryPicker = app.state.picker
        try:
            node = await picker.cherry_pick_node(
                body.application, body.session, body.blockchain, body.request_id
            )
        except EmptyCandidatesError as e:
            raise HTTPException(400, str(e))
        except QualityStoreError as e:
            logger.error(f"Node selection failed: {e}", exc_info=True)
            raise HTTPException(503, "Quality store unavailable")
        return NodeSelection(node=node)

    @app.post("/outcomes")
    async def record_outcome(body: RelayOutcome):
        picker: CherryPicker = app.state.picker
        try:
            await picker.update_service_quality(
                body.blockchain,
                body.application_id,
                body.node_public_key,
                body.elapsed_time,
                body.result,
            )
        except QualityStoreError as e:
            logger.error(f"Quality update failed: {e}", exc_info=True)
            raise HTTPException(503, "Quality store unavailable")
        return {"status": "ok"}

    @app.get("/service-logs/{blockchain}")
    async def get_service_logs(
        blockchain: str, ids: List[str] = Query(..., description="Candidate ids")
    ):
        """Ranked service logs for the current hour (debugging aid)."""
        picker: CherryPicker = app.state.picker
        try:
            logs = await picker.service_logs(blockchain, ids)
        except QualityStoreError as e:
            raise HTTPException(503, str(e))
        return {
            "blockchain": blockchain,
            "logs": [log.model_dump() for log in sort_logs(logs)],
        }

    @app.get("/metrics")
    async def get_metrics():
        metrics: MetricsCollector = app.state.metrics
        return metrics.summary()

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cherry_picker.main:app",
        host="0.0.0.0",
        port=8021,
        log_level="info",
    )
