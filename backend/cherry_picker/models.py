"""
Cherry Picker Models
=====================
Pydantic models for the stored quality record, the derived service log,
the application/session objects handed in by the relayer, and API contracts.
"""

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

SUCCESS_CODE = 200


# ── Stored Record ─────────────────────────────────────────────────

class QualityRecord(BaseModel):
    """
    Raw quality record for one candidate in one hour bucket.

    Wire shape (JSON text in the counter store):
        {"results": {"200": 19, "500": 1}, "averageSuccessLatency": "120.00000"}
    """
    model_config = ConfigDict(populate_by_name=True)

    results: Dict[int, NonNegativeInt] = Field(default_factory=dict)
    average_success_latency: float = Field(0.0, ge=0.0, alias="averageSuccessLatency")

    @property
    def attempts(self) -> int:
        return sum(self.results.values())

    def success_count(self, success_code: int = SUCCESS_CODE) -> int:
        return self.results.get(success_code, 0)

    def failure_counts(self, success_code: int = SUCCESS_CODE) -> Dict[int, int]:
        return {code: n for code, n in self.results.items() if code != success_code}

    def to_wire(self, precision: int = 5) -> str:
        return json.dumps({
            "results": {str(code): n for code, n in self.results.items()},
            "averageSuccessLatency": f"{self.average_success_latency:.{precision}f}",
        })


# ── Derived Service Log ───────────────────────────────────────────

class ServiceLog(BaseModel):
    """Per-candidate quality summary, recomputed for every selection."""
    id: str
    attempts: int = 0
    success_rate: float = Field(1.0, ge=0.0, le=1.0)
    average_success_latency: float = 0.0


# ── Relayer Objects ───────────────────────────────────────────────

class Application(BaseModel):
    """An application credential assigned to a load balancer."""
    id: str
    name: Optional[str] = None
    public_key: Optional[str] = None
    chain: Optional[str] = None


class Node(BaseModel):
    """A service node from an application's session."""
    public_key: str
    address: Optional[str] = None
    service_url: Optional[str] = None
    chains: List[str] = Field(default_factory=list)


class SessionHeader(BaseModel):
    app_public_key: Optional[str] = None
    chain: Optional[str] = None
    session_block_height: Optional[int] = None


class Session(BaseModel):
    """The set of nodes currently dispatched to an application."""
    header: SessionHeader = Field(default_factory=SessionHeader)
    session_nodes: List[Node] = Field(default_factory=list)


# ── API Request / Response Models ─────────────────────────────────

class SelectApplicationRequest(BaseModel):
    """Request body for POST /select/application."""
    load_balancer_id: str
    application_ids: List[str] = Field(..., min_length=1)
    blockchain: str
    request_id: str = ""


class SelectNodeRequest(BaseModel):
    """Request body for POST /select/node."""
    application: Application
    session: Session
    blockchain: str
    request_id: str = ""


class RelayOutcome(BaseModel):
    """Request body for POST /outcomes, sent once a relay completes."""
    blockchain: str
    application_id: str
    node_public_key: str
    elapsed_time: float = Field(..., ge=0.0)
    result: int


class ApplicationSelection(BaseModel):
    application_id: str


class NodeSelection(BaseModel):
    node: Node


class HealthResponse(BaseModel):
    """API response for GET /health."""
    status: str
    service: str = "cherry-picker"
    version: str = "1.0.0"
    store: str = "unknown"
    uptime_seconds: float = 0.0
    metrics_summary: Dict[str, Any] = Field(default_factory=dict)
