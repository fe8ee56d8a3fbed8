"""
Cherry Picker Configuration
============================
Centralized configuration with environment variable overrides.
All weighting thresholds, failure quotas and TTLs live here.
"""

import os
from dataclasses import dataclass
from typing import Optional


# ── Relay Types ──────────────────────────────────────────────────
# Tag carried on every log line so LB and APP selections can be told apart.
RELAY_TYPE_APPLICATION = "LB"
RELAY_TYPE_NODE = "APP"


@dataclass(frozen=True)
class SelectorConfig:
    """Tuning knobs for quality-weighted candidate selection."""

    # Counter store (None → process-local memory store)
    redis_url: Optional[str] = None
    application_ttl_s: int = 900          # App history decays after 15 minutes
    node_ttl_s: int = 3600                # Node history lives for the whole hour

    # Failure quotas (zero-success candidates at or above this are shelved)
    application_max_failures: int = 15    # All 5 session nodes failed 3 times
    node_max_failures: int = 3

    # Weighted pool
    initial_weight_factor: int = 10
    top_tier_rate: float = 0.95           # Strictly above → top tier
    top_tier_decay: int = 2
    second_tier_rate: float = 0.85        # Strictly above → second tier
    second_tier_decay: int = 3

    # Service log math
    success_code: int = 200
    latency_precision: int = 5            # Decimal places kept on the running mean

    # Verbose ranking diagnostics
    check_debug: bool = False

    # Atomic read-modify-write on the counter store
    atomic_updates: bool = False
    max_cas_attempts: int = 5

    # Metrics
    metrics_buffer_size: int = 1000


def _parse_bool(val: str) -> bool:
    if val.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if val.strip().lower() in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {val!r}")


def load_config() -> SelectorConfig:
    """Load config with environment variable overrides."""
    overrides = {}
    env_map = {
        "REDIS_URL": ("redis_url", str),
        "CHERRY_APP_TTL": ("application_ttl_s", int),
        "CHERRY_NODE_TTL": ("node_ttl_s", int),
        "CHERRY_APP_MAX_FAILURES": ("application_max_failures", int),
        "CHERRY_NODE_MAX_FAILURES": ("node_max_failures", int),
        "CHERRY_CHECK_DEBUG": ("check_debug", _parse_bool),
        "CHERRY_ATOMIC_UPDATES": ("atomic_updates", _parse_bool),
        "CHERRY_MAX_CAS_ATTEMPTS": ("max_cas_attempts", int),
    }
    for env_key, (field_name, cast_fn) in env_map.items():
        val = os.getenv(env_key)
        if val is not None:
            try:
                overrides[field_name] = cast_fn(val)
            except (ValueError, TypeError):
                pass
    return SelectorConfig(**overrides)
